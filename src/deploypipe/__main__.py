"""Allow ``python -m deploypipe``."""

from deploypipe.cli.app import main

if __name__ == "__main__":
    main()
