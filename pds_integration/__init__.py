"""
Integration-test harness for Portworx Data Services (PDS).

The package drives scenarios whose state is split between the PDS control
plane (REST) and a Kubernetes target cluster, and keeps both views in sync
through bounded polling.
"""

__version__ = "0.4.0"
