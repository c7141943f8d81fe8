"""PrakritiMitra realtime event chat and attendance service."""

import importlib.metadata
import logging

__all__ = ["__version__"]

log = logging.getLogger(__name__)
log.setLevel(logging.INFO)
handler = logging.StreamHandler()
formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
handler.setFormatter(formatter)
log.addHandler(handler)

try:
    __version__ = importlib.metadata.version("prakritimitra")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0"
