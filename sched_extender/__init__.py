"""
sched-extender - Kubernetes scheduler extender decision engine
"""

__version__ = "0.1.0"
