"""
Entry point for running the CLI with `python -m logstock`.
"""
from logstock.cli import main

if __name__ == "__main__":
    main()
