"""
Main entry point when running the trajectory_control module with python -m.
"""

from .client import cli

if __name__ == "__main__":
    cli()
