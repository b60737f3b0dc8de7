"""
SOTE - QR codes for sharing a network address.

Renders an identity's network address as a terminal QR code so a peer can
scan it instead of typing a 62-character onion address.
"""

import io
import logging

import qrcode

from .errors import ErrorCode, SoteError

logger = logging.getLogger(__name__)

ERROR_LEVELS = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}


def generate_qr_code(data: str, error_correction: str = "M", border: int = 1) -> qrcode.QRCode:
    """Generate a QR code from data.

    Args:
        data: Data to encode in QR code
        error_correction: Error correction level (L, M, Q, H)
        border: Quiet zone size in modules

    Returns:
        QR code object

    Raises:
        SoteError: E002 for empty data, E005 if generation fails
    """
    if not data:
        raise SoteError(ErrorCode.E002_INVALID_ARGUMENT, "Nothing to encode", {"operation": "qr_code"})

    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_LEVELS.get(error_correction, qrcode.constants.ERROR_CORRECT_M),
            border=border,
        )
        qr.add_data(data)
        qr.make(fit=True)
    except (ValueError, qrcode.exceptions.DataOverflowError) as e:
        raise SoteError(
            ErrorCode.E005_OPERATION_FAILED, f"QR code generation failed: {e}", {"operation": "qr_code"}
        ) from e

    logger.debug(f"Generated QR code: {len(data)} bytes, version {qr.version}")
    return qr


def render_qr_terminal(data: str) -> str:
    """Render data as a QR code drawn with block characters."""
    out = io.StringIO()
    generate_qr_code(data).print_ascii(out=out, invert=True)
    return out.getvalue()
