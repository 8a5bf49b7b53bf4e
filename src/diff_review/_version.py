# keep in step with setup.py
__version__ = "0.1.0"
