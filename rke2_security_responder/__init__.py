"""Cluster fingerprint collection and reporting for RKE2 security advisories."""

__version__ = "0.3.0"
