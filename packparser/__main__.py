"""
Module entry point for: python -m packparser

Allows running the CLI directly as a module:
    python -m packparser parse <file> [options]
    python -m packparser import <file> [options]
    python -m packparser serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
