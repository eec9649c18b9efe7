"""Projection of SafuPad launchpad and bonding-curve events into queryable entities."""

__version__ = "0.1.0"
