import qrcode
import qrcode.image.svg


def make_login_qr_svg_bytes(payload: str) -> bytes:
    """SVG QR of a session login URI, for wallets that scan instead of connect."""
    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()
