"""
Entry point for running the marking CLI as a module: python -m scanmark
"""

import sys

from scanmark.cli import main

if __name__ == "__main__":
    sys.exit(main())
