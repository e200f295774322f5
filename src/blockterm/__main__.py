"""Module entrypoint for `python -m blockterm`."""

from blockterm.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
