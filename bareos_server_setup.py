#!/usr/bin/env python3
"""Run the Bareos server provisioner from a source checkout (as root)."""

import sys

from bareos_setup.cli import main

if __name__ == "__main__":
    sys.exit(main())
