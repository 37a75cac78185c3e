"""kube-pat: port address translation controller for Kubernetes."""

__version__ = "0.1.0"
