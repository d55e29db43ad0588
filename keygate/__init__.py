"""
KeyGate - key-gated delivery of protected scripts
"""

__version__ = "0.1.0"
