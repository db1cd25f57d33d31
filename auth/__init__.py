"""auth/ -- Resource-owner authentication for epicflare.

Password hashing, the users table, signed session cookies and audit logging.

Layer rule: auth/ imports only stdlib + third-party libraries and core/.
It does NOT import from api/, web/, oauth/, or toolserver/.
api/ and web/ import from auth/, not the other way around.
"""
