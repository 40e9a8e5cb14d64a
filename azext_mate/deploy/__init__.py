"""Deployment execution engine: sessions, backends and log streams."""
