"""PostgreSQL server and the Bareos catalog database.

The catalog must be UTF-8.  :func:`ensure_catalog` walks the three states:

* ``absent``: create the role and a UTF-8 database from ``template0`` with an
  explicit locale, then load the Bareos tables and grants.
* ``present-valid``: nothing to do.
* ``present-invalid``: a wrong-encoding catalog from an earlier install.  With
  auto-repair enabled the director is stopped (and confirmed stopped), sessions
  are cut, the database is dropped and recreated through the ``absent`` path.
  Without it the defect is reported and left for the operator.
"""

from __future__ import annotations

import subprocess
from typing import Sequence

from . import console
from .errors import CatalogError, DatabaseUnavailableError
from .executil import error_text, run, trace
from .model import CatalogState, SetupConfig

POSTGRES_USER = "postgres"
SCHEMA_SCRIPTS = ("make_bareos_tables", "grant_bareos_privileges")


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _as_postgres(cmd: Sequence[str]) -> list[str]:
    return ["sudo", "-u", POSTGRES_USER, *cmd]


def psql(sql: str, check: bool = True, dry_run: bool = False):
    cmd = ["psql", "-v", "ON_ERROR_STOP=1", "-Atc", sql]
    return run(_as_postgres(cmd), check=check, dry_run=dry_run)


def psql_value(sql: str) -> str:
    """Single value from a query; empty string when the query fails."""

    r = psql(sql, check=False)
    if r.rc != 0:
        trace("catalog.query_failed", sql=sql, rc=r.rc, err=(r.err or "").strip())
        return ""
    return (r.out or "").strip()


def server_responding() -> bool:
    return psql_value("SELECT 1") == "1"


def check_server(dry_run: bool = False) -> None:
    if not server_responding():
        if dry_run:
            console.warn("PostgreSQL not responding (dry run, continuing)")
            return
        raise DatabaseUnavailableError(
            "PostgreSQL not responding on local socket",
            hint="check `systemctl status postgresql` and the server log",
        )
    encoding = psql_value("SHOW server_encoding;")
    if encoding:
        console.info(f"PostgreSQL server_encoding: {encoding}")


def database_exists(name: str) -> bool:
    return psql_value(f"SELECT 1 FROM pg_database WHERE datname={quote_literal(name)}") == "1"


def database_encoding(name: str) -> str:
    return psql_value(f"SELECT pg_encoding_to_char(encoding) FROM pg_database WHERE datname={quote_literal(name)}")


def describe_database(name: str) -> dict[str, str]:
    row = psql_value(
        "SELECT pg_encoding_to_char(encoding) || '|' || datcollate || '|' || datctype "
        f"FROM pg_database WHERE datname={quote_literal(name)}"
    )
    enc, _, rest = row.partition("|")
    collate, _, ctype = rest.partition("|")
    return {"name": name, "encoding": enc, "collate": collate, "ctype": ctype}


def catalog_state(name: str) -> CatalogState:
    if not database_exists(name):
        return CatalogState.ABSENT
    if database_encoding(name) == "UTF8":
        return CatalogState.VALID
    return CatalogState.INVALID


def role_exists(role: str) -> bool:
    return psql_value(f"SELECT 1 FROM pg_roles WHERE rolname={quote_literal(role)}") == "1"


def create_database_sql(name: str, owner: str, locale: str) -> str:
    return (
        f"CREATE DATABASE {quote_ident(name)} OWNER {quote_ident(owner)} "
        f"ENCODING 'UTF8' LC_COLLATE {quote_literal(locale)} LC_CTYPE {quote_literal(locale)} "
        "TEMPLATE template0"
    )


def load_schema(config: SetupConfig) -> None:
    for script in SCHEMA_SCRIPTS:
        path = f"{config.bareos_scripts_dir.rstrip('/')}/{script}"
        run(
            _as_postgres(["env", f"db_name={config.db_name}", f"db_user={config.db_user}", path]),
            dry_run=config.dry_run,
        )


def create_catalog(config: SetupConfig) -> None:
    console.info(f"Creating Bareos database '{config.db_name}', tables, privileges (UTF-8, {config.db_locale})")
    if not role_exists(config.db_user):
        psql(f"CREATE ROLE {quote_ident(config.db_user)} LOGIN", dry_run=config.dry_run)
    psql(create_database_sql(config.db_name, config.db_user, config.db_locale), dry_run=config.dry_run)
    load_schema(config)


def service_active(unit: str) -> bool:
    return run(["systemctl", "is-active", "--quiet", unit], check=False).rc == 0


def stop_director(config: SetupConfig) -> None:
    """Stop the director and make sure it stays down before the drop."""

    unit = config.director_service
    run(["systemctl", "stop", unit], check=False, dry_run=config.dry_run)
    if config.dry_run:
        return
    if service_active(unit):
        raise CatalogError(
            f"{unit} is still running; refusing to drop catalog '{config.db_name}'",
            hint=f"stop {unit} manually (`systemctl stop {unit}`) and re-run",
            state={"unit": unit},
        )
    trace("catalog.director_stopped", unit=unit)


def repair_catalog(config: SetupConfig) -> None:
    name = config.db_name
    stop_director(config)
    psql(f"REVOKE CONNECT ON DATABASE {quote_ident(name)} FROM PUBLIC;", check=False, dry_run=config.dry_run)
    psql(
        f"SELECT pg_terminate_backend(pid) FROM pg_stat_activity WHERE datname={quote_literal(name)};",
        check=False,
        dry_run=config.dry_run,
    )
    try:
        psql(f"DROP DATABASE {quote_ident(name)};", dry_run=config.dry_run)
    except subprocess.CalledProcessError as exc:
        raise CatalogError(
            f"could not drop catalog '{name}': {error_text(exc)}",
            hint="close remaining sessions to the database and re-run",
            state={"database": name},
        ) from exc
    create_catalog(config)
    console.ok(f"Recreated '{name}' with UTF-8 encoding.")


def ensure_catalog(config: SetupConfig) -> CatalogState:
    """Create or repair the catalog; returns the state found before either."""

    name = config.db_name
    state = catalog_state(name)
    trace("catalog.state", database=name, state=state.value)
    if state is CatalogState.ABSENT:
        create_catalog(config)
        return state

    info = describe_database(name)
    console.info(
        f"Bareos database already exists: encoding={info['encoding']} "
        f"collate={info['collate']} ctype={info['ctype']}"
    )
    if state is CatalogState.VALID:
        console.ok("Bareos DB is UTF-8")
        return state

    if config.catalog_auto_repair:
        console.warn(f"Database '{name}' is NOT UTF-8. Recreating it now (auto-fix).")
        repair_catalog(config)
    else:
        console.warn(
            f"Database '{name}' is NOT UTF-8 and auto-repair is disabled; "
            f"drop and recreate it manually (or re-run with --catalog-auto-repair)."
        )
    return state


def ensure_server_running(config: SetupConfig) -> None:
    run(["systemctl", "enable", "--now", "postgresql"], dry_run=config.dry_run)
