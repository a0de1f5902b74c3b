"""
quiver package
--------------
Arrow lifecycle engine for a single host: versioned manifests, a
dependency-aware package database, the method execution engine, process
supervision and NAT port forwarding (UPnP / NAT-PMP).
"""

__version__ = "0.4.0"
