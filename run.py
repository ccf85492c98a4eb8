"""Run tlsdeploy from a checkout."""

from tlsdeploy.cli import main

if __name__ == "__main__":
    main()
