"""
Entry point for running darwinforge as a module.

Usage:
    python -m darwinforge [args]

This is equivalent to:
    darwin-cli [args]
"""

import sys

from darwinforge.cli.darwin_cli import main


if __name__ == "__main__":
    sys.exit(main())
