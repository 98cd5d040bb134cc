"""
Allow running iocctl as a module: python -m ioc_ingest.cli
"""

import sys
from .iocctl import main

if __name__ == "__main__":
    sys.exit(main())
