#!/usr/bin/env python3
"""
thl-tools launcher script.
This can be run directly from a checkout.
"""

import sys

from thl_tools.main import main

if __name__ == "__main__":
    sys.exit(main())
