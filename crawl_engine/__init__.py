"""Browser-driven job search crawler with session rotation and challenge handling"""

__version__ = "0.1.0"
