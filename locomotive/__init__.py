"""Locomotive: scheduled bulk retrieval of remote files over lftp."""
