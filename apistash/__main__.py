"""Main entry point when executing apistash as a package.

This allows running the package using python -m apistash.
"""

from apistash.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
