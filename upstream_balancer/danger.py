"""TLS settings that switch off certificate validation.

Connections made with these settings are open to man-in-the-middle attacks.
Use them only for development or testing against self-signed servers.
"""

from __future__ import annotations

import ssl


def create_dangerous_ssl_context() -> ssl.SSLContext:
    """Return a client TLS context that accepts any certificate and any host name.

    Self-signed, expired, mismatched and untrusted certificates are all accepted.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context