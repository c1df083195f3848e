"""
Edge Auth Gateway

Authentication core of a reverse-proxy gateway: OIDC Authorization-Code
login against Microsoft Entra ID, ID token validation, server-side sessions
and a one-time code exchange for backends in other trust domains.
"""

__version__ = "1.0.0"
