"""
Main entry point for running xping as a module.

Usage:
    python -m xping "vless://uuid@server:443?security=tls&type=ws#name"
    python -m xping config.json --count 5
"""

from .cli import cli

if __name__ == "__main__":
    cli()
