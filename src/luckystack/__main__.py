"""
Allow running luckystack as a module: python -m luckystack
"""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
