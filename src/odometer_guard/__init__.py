"""Odometer Guard - mileage validation, trust scoring and daily anchoring."""

__version__ = "0.1.0"
