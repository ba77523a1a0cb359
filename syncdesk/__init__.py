"""
SyncDesk - identity-token lifecycle and inbox/calendar synchronization core.
"""

__version__ = "1.0.0"
