#!/usr/bin/env python3
"""Convenience launcher: ``python run.py --endpoint ...``."""

from miragemod.__main__ import main


if __name__ == "__main__":
    main()
