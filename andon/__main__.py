"""
Entry point for running andon as a module.

Allows running as: python -m andon
"""

from andon.cli import cli_main

if __name__ == "__main__":
    cli_main()
