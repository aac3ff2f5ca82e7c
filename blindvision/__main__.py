"""
Entry point for running blindvision as a module.

Usage: python -m blindvision
"""

from blindvision.cli import main

if __name__ == "__main__":
    main()
