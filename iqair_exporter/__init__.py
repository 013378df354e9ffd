"""Prometheus exporter for iqAir AirVisual air quality monitors."""

__version__ = "0.1.0"
