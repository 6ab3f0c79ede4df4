"""Allow running mktcb as ``python -m mktcb``."""

from mktcb.cli import app

app(prog_name="mktcb")
