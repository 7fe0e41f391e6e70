"""
Prometheus exporter for samba server status.

samba-statusd runs smbstatus with the privileges it needs, samba-exporter
asks it for the status through two named pipes and serves the metrics.
"""

__version__ = "1.0.0"
