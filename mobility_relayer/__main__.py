"""
Entry point for running the relayer as a module.

Usage:
    python -m mobility_relayer
"""

from mobility_relayer.cli import main

if __name__ == "__main__":
    main()
