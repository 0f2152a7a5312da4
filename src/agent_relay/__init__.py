from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agent-relay")
except PackageNotFoundError:
    # Package not installed (e.g. running from source without pip install)
    __version__ = "0.0.0.dev0"

__all__ = ["__version__"]

import logging

# Library code never configures handlers; the CLI (or the embedding
# application) decides where records go.
logging.getLogger(__name__).addHandler(logging.NullHandler())
