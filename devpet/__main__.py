import sys

from devpet.cli import main

if __name__ == "__main__":
    sys.exit(main())
