"""QR code rendering for pairing payloads.

Renders the provider's current QR payload for terminal display or as an SVG
document for the pairing page.
"""

import io

import qrcode
from qrcode.image.svg import SvgPathImage
from qrcode.main import QRCode


class QrRenderer:
    """Render a QR payload string."""

    def __init__(self, payload: str):
        """Initialize renderer.

        Args:
            payload: Opaque QR payload from the link provider.
        """
        if not payload:
            raise ValueError("QR payload must not be empty")
        self.payload = payload

    def _create_qr(self, box_size: int = 10) -> QRCode:
        qr = qrcode.QRCode(
            version=None,  # Auto-size
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=box_size,
            border=4,
        )
        qr.add_data(self.payload)
        qr.make(fit=True)
        return qr

    def to_terminal(self) -> str:
        """Generate ASCII art for terminal display.

        Returns:
            String with QR code using Unicode block characters.
        """
        qr = self._create_qr()

        output = io.StringIO()
        qr.print_ascii(out=output, invert=True)
        return output.getvalue()

    def to_svg(self) -> str:
        """Generate a standalone SVG document."""
        qr = self._create_qr()
        img = qr.make_image(image_factory=SvgPathImage)

        buffer = io.BytesIO()
        img.save(buffer)
        return buffer.getvalue().decode("utf-8")
