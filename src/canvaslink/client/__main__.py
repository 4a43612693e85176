"""Module entrypoint for `python -m canvaslink.client`."""

from __future__ import annotations

from canvaslink.client.cli import main_entry


if __name__ == "__main__":
    main_entry()
