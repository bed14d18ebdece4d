"""Waypoint: service registry, configuration distributor and routing gateway."""

__version__ = '0.1.0'
