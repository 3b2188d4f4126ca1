"""
Locator and resolution engine.

Provides:
- parse_locators: split and classify locator candidates
- resolve / wait_for: first-match resolution over a DOM snapshot, with polling
- actions: click, type, select, scroll, query, set_file_input over a `Page`
"""

from .parse import Locator, parse_locators
from .resolve import Resolution, resolve, wait_for

__all__ = ["Locator", "Resolution", "parse_locators", "resolve", "wait_for"]
