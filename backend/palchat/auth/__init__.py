"""Credential verification for socket handshakes and REST calls.

Services:
    - JWTTokenVerifier: validates HS* signed JWTs issued elsewhere.
"""
