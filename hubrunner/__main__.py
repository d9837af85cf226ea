"""Module entrypoint to run `python -m hubrunner`."""

from __future__ import annotations

from .daemon import main

if __name__ == "__main__":
    main()
