import sys

from jobshell.shell import main

if __name__ == "__main__":
    sys.exit(main())
