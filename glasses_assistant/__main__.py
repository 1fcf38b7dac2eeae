"""
Entry point for running glasses-assistant as a module.

Usage: python -m glasses_assistant
"""

from glasses_assistant.cli import main

if __name__ == "__main__":
    main()
