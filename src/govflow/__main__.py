"""
Entry point for running govflow as a module.

Usage:
    python -m govflow [command] [options]
"""

from govflow.cli import main

if __name__ == "__main__":
    main()
