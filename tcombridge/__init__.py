"""Tcom Bridge package initialisation."""

__version__ = "1.4.0"

import logging

logger = logging.getLogger(__name__)
