"""
Entry point for running gatebot as a module: python -m gatebot
"""

from gatebot.cli.commands import app

if __name__ == "__main__":
    app()
