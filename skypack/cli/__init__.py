"""Command-line tools for skypack devices."""
