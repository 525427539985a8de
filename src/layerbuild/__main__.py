"""
Layer Build - Main entry point

Allows running the CLI as 'python -m layerbuild'.
"""

from .cli import cli

if __name__ == "__main__":
    cli()
