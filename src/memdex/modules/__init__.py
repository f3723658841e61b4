"""Feature modules for :mod:`memdex`."""
