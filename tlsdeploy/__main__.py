"""
Entry point for running tlsdeploy via `python -m tlsdeploy`.
"""

from .cli import main

if __name__ == "__main__":
    main()
