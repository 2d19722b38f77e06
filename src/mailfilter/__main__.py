"""Entry point for running mailfilter as a module.

Usage:
    python -m mailfilter --help
"""

from dotenv import load_dotenv

load_dotenv()  # Before any import that reads environment variables

from mailfilter.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
