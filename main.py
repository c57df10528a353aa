"""
Convenience entry point so the tool can be run from a source checkout
with `python main.py ...` without installing it.
"""

import sys

from clipcrunch.main import main

if __name__ == "__main__":
    sys.exit(main())
