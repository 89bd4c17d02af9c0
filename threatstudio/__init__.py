"""ThreatStudio: visual security-analysis pipeline editor and runner."""
__version__ = "1.0.0"
