"""CLI entry point for pixelstream.cli module.

Enables execution via: python -m pixelstream.cli
"""

from pixelstream.cli.recover_stalled import main

if __name__ == "__main__":
    raise SystemExit(main())
