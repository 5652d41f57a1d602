"""Mutual-TLS context construction."""

import ssl

from pxlink.core.domain.models import ClientIdentity


def build_ssl_context(identity: ClientIdentity, verify: bool = True) -> ssl.SSLContext:
    """
    Build a client SSL context from the identity's certificate material.

    Args:
        identity: Client identity holding certificate, key and CA bundle paths
        verify: Verify the controller certificate against the CA bundle

    Returns:
        SSL context usable by aiohttp for HTTPS and WSS connections
    """
    context = ssl.create_default_context(
        ssl.Purpose.SERVER_AUTH,
        cafile=identity.ca_bundle,
    )
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    if identity.cert_file:
        context.load_cert_chain(
            certfile=identity.cert_file,
            keyfile=identity.key_file,
            password=identity.key_password,
        )

    return context
