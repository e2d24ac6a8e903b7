"""IP quality pipeline: resolve, probe, score and geolocate candidate IPs."""

__version__ = "0.1.0"
