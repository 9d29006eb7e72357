"""Allow ``python -m drip_engine``."""

from drip_engine.cli.main import app

app()
