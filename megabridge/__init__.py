"""Background downloader for MEGA public folder links"""

__version__ = "1.0.0"
