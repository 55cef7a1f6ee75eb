"""The main module for the Opentrons sequencer."""

from contextlib import suppress
from importlib.metadata import PackageNotFoundError, version

with suppress(PackageNotFoundError):
    __version__ = version("opentrons-sequencer")
