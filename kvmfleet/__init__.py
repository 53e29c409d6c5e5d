"""kvmfleet - parallel VM provisioning and Kubernetes cluster bootstrap."""

__version__ = "0.1.0"
