"""Bareos APT repository registration and package installation."""

from __future__ import annotations

import os
import subprocess
from typing import Any, Dict, Sequence

import httpx

from . import console
from .errors import KeyFetchError, PackageInstallError
from .executil import error_text, run, trace, which

SERIES_BY_VERSION = {
    "25.04": "xUbuntu_25.04",
    "24.04": "xUbuntu_24.04",
    "22.04": "xUbuntu_22.04",
}
DEFAULT_SERIES = "xUbuntu_24.04"
REPO_PREREQS = ("gpg", "ca-certificates", "apt-transport-https")
KEY_FETCH_TIMEOUT = 60.0


def _os_release_version(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            lines = fh.read().splitlines()
    except FileNotFoundError:
        return ""
    for line in lines:
        key, _, value = line.partition("=")
        if key.strip() == "VERSION_ID":
            return value.strip().strip('"').strip("'")
    return ""


def host_version(os_release_path: str = "/etc/os-release") -> str:
    if which("lsb_release"):
        r = run(["lsb_release", "-sr"], check=False)
        if r.rc == 0 and (r.out or "").strip():
            return r.out.strip()
    return _os_release_version(os_release_path)


def detect_series(os_release_path: str = "/etc/os-release") -> str:
    """Map the host release to a repository series; unknown hosts get the default."""

    version = host_version(os_release_path)
    series = SERIES_BY_VERSION.get(version)
    if series is None:
        console.warn(f"Unknown Ubuntu VERSION_ID '{version}'; defaulting to {DEFAULT_SERIES}")
        series = DEFAULT_SERIES
    trace("repository.series", version=version, series=series)
    return series


def resolve_series(override: str | None, os_release_path: str = "/etc/os-release") -> str:
    if override:
        return override
    return detect_series(os_release_path)


def series_url(base_url: str, series: str) -> str:
    return f"{base_url.rstrip('/')}/{series}"


def key_url(base_url: str, series: str) -> str:
    return f"{series_url(base_url, series)}/Release.key"


def source_line(base_url: str, series: str, keyring: str) -> str:
    return f"deb [signed-by={keyring}] {series_url(base_url, series)}/ /"


def fetch_key(url: str, series: str, client: httpx.Client | None = None) -> str:
    """Download the repository signing key.

    A 404 here almost always means the series has not been published on the
    download server yet.
    """

    console.info(f"Fetching key: {url}")
    hint = f"series {series!r} may not be published yet; override it, e.g. SERIES={DEFAULT_SERIES} or --series {DEFAULT_SERIES}"
    try:
        if client is None:
            with httpx.Client(timeout=KEY_FETCH_TIMEOUT, follow_redirects=True) as own:
                response = own.get(url)
                response.raise_for_status()
        else:
            response = client.get(url)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        trace("repository.key_http_error", url=url, status=exc.response.status_code)
        raise KeyFetchError(
            f"Bareos key download failed: HTTP {exc.response.status_code} for {url}",
            hint=hint,
            state={"url": url, "status": exc.response.status_code},
        ) from exc
    except httpx.HTTPError as exc:
        trace("repository.key_transport_error", url=url, error=str(exc))
        raise KeyFetchError(
            f"Bareos key download failed: {exc}",
            hint=hint,
            state={"url": url},
        ) from exc
    text = response.text
    if not text.strip():
        raise KeyFetchError(f"Bareos key download returned an empty body: {url}", hint=hint, state={"url": url})
    return text


def install_key(armored: str, keyring: str, dry_run: bool = False) -> None:
    if not dry_run:
        os.makedirs(os.path.dirname(keyring), exist_ok=True)
    run(["gpg", "--dearmor", "--yes", "-o", keyring], input=armored, dry_run=dry_run)


def write_source_list(path: str, line: str, dry_run: bool = False) -> None:
    trace("repository.source_list", path=path, line=line, dry_run=dry_run)
    if dry_run:
        return
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(line + "\n")


def source_registered(path: str, line: str, keyring: str) -> bool:
    if not os.path.isfile(keyring):
        return False
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return line in fh.read().splitlines()
    except FileNotFoundError:
        return False


def register_repository(
        base_url: str,
        series: str,
        keyring: str,
        list_path: str,
        *,
        dry_run: bool = False,
        client: httpx.Client | None = None,
) -> Dict[str, Any]:
    """Fetch and install the signing key, then point APT at the repository.

    The source list is only written once the key is in the keyring.
    """

    console.info(f"Adding Bareos repo (series: {series})")
    armored = fetch_key(key_url(base_url, series), series, client=client)
    install_key(armored, keyring, dry_run=dry_run)
    line = source_line(base_url, series, keyring)
    write_source_list(list_path, line, dry_run=dry_run)
    return {"series": series, "keyring": keyring, "list": list_path, "line": line}


def apt_update(dry_run: bool = False) -> None:
    run(["apt-get", "update", "-y"], dry_run=dry_run)


def apt_install(packages: Sequence[str], dry_run: bool = False) -> None:
    run(["apt-get", "install", "-y", *packages], dry_run=dry_run)


def packages_installed(packages: Sequence[str]) -> bool:
    for pkg in packages:
        r = run(["dpkg-query", "-W", "-f=${Status}", pkg], check=False)
        if r.rc != 0 or "install ok installed" not in (r.out or ""):
            return False
    return True


def install_with_repair(packages: Sequence[str], dry_run: bool = False) -> Dict[str, Any]:
    """Install ``packages``; on failure run one ``apt-get -f install`` pass and retry once."""

    stats: Dict[str, Any] = {"packages": list(packages), "repaired": False}
    try:
        apt_install(packages, dry_run=dry_run)
        return stats
    except subprocess.CalledProcessError as exc:
        first = error_text(exc)
        trace("repository.install_retry", packages=list(packages), error=first)
        console.warn("Package install failed; attempting dependency repair and one retry")
    repair = run(["apt-get", "-f", "install", "-y"], check=False, dry_run=dry_run)
    stats["repaired"] = repair.rc == 0
    try:
        apt_install(packages, dry_run=dry_run)
    except subprocess.CalledProcessError as exc:
        raise PackageInstallError(
            f"package installation failed after one retry: {' '.join(packages)}",
            hint="inspect `apt-get install` output in the trace log; fix held or broken packages and re-run",
            state={"packages": list(packages), "first_error": first, "second_error": error_text(exc)},
        ) from exc
    stats["retried"] = True
    return stats
