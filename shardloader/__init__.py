"""Exactly-once-per-range loading of Kinesis streams into Redshift."""

__version__ = "1.0.0"
