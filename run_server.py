import sys

from livemd.cli import main

if __name__ == "__main__":
    # Same as `livemd`, kept for running from a source checkout
    sys.exit(main())
