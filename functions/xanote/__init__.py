"""
XA Note service package.

Provides the persistence adapters (embedded SQLite and remote Cloudflare D1),
the settings cache and the scheduled WebDAV backup job, plus a thin FastAPI
surface for install state, settings and backups.
"""
