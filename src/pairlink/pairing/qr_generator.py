"""QR payloads and QR code rendering for pairing.

The QR code shown by the host carries the connection id and host device
id, either as query parameters of a connection URL:

    https://example.test/?connectionId=...&hostDeviceId=...&action=connect

or as a compact JSON object with the same keys. The joining device
accepts both forms.
"""

import base64
import html
import io
import json
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

import qrcode
from qrcode.main import QRCode

from pairlink.codes import is_valid_token
from pairlink.errors import InvalidPayloadError

CONNECT_ACTION = "connect"


@dataclass(frozen=True)
class PairingPayload:
    """Identifiers a guest needs to join a pending connection."""

    connection_id: str
    host_device_id: str
    action: str = CONNECT_ACTION

    def _fields(self) -> dict[str, str]:
        return {
            "connectionId": self.connection_id,
            "hostDeviceId": self.host_device_id,
            "action": self.action,
        }

    def to_url(self, base_url: str) -> str:
        """Encode as query parameters on base_url (existing query is replaced)."""
        parts = urlsplit(base_url)
        path = parts.path or "/"
        return urlunsplit(
            (parts.scheme, parts.netloc, path, urlencode(self._fields()), "")
        )

    def to_json(self) -> str:
        """Encode as compact JSON."""
        return json.dumps(self._fields(), separators=(",", ":"))


def encode_connection_url(
    base_url: str, connection_id: str, host_device_id: str
) -> str:
    return PairingPayload(connection_id, host_device_id).to_url(base_url)


def encode_connection_json(connection_id: str, host_device_id: str) -> str:
    return PairingPayload(connection_id, host_device_id).to_json()


def decode_pairing_payload(text: str) -> PairingPayload:
    """Decode a scanned QR payload.

    Args:
        text: Either a connection URL or the JSON form.

    Returns:
        The decoded payload.

    Raises:
        InvalidPayloadError: If the payload is not a connect request with
            both identifiers.
    """
    text = (text or "").strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            raise InvalidPayloadError("Malformed pairing payload") from None
        if not isinstance(data, dict):
            raise InvalidPayloadError("Malformed pairing payload")
        fields = {k: v for k, v in data.items() if isinstance(v, str)}
    else:
        query = parse_qs(urlsplit(text).query)
        # Repeated parameters are ambiguous
        if any(len(values) != 1 for values in query.values()):
            raise InvalidPayloadError("Ambiguous pairing payload")
        fields = {k: values[0] for k, values in query.items()}

    if fields.get("action") != CONNECT_ACTION:
        raise InvalidPayloadError("Not a connect payload")

    connection_id = fields.get("connectionId", "")
    host_device_id = fields.get("hostDeviceId", "")
    if not is_valid_token(connection_id) or not is_valid_token(host_device_id):
        raise InvalidPayloadError("Pairing payload is missing identifiers")

    return PairingPayload(connection_id, host_device_id)


class QrRenderer:
    """Render text (a pairing payload or a plain paste) as a QR code."""

    def __init__(self, data: str):
        """Initialize renderer.

        Args:
            data: Text to encode.
        """
        self.data = data

    def _create_qr(self) -> QRCode:
        qr = qrcode.QRCode(
            version=None,  # Auto-size
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=10,
            border=4,
        )
        qr.add_data(self.data)
        qr.make(fit=True)
        return qr

    def to_terminal(self) -> str:
        """Generate ASCII art for terminal display."""
        qr = self._create_qr()

        output = io.StringIO()
        qr.print_ascii(out=output, invert=True)
        return output.getvalue()

    def to_png(self, path: str) -> None:
        """Save QR code as PNG file."""
        qr = self._create_qr()
        img = qr.make_image(fill_color="black", back_color="white")
        img.save(path)

    def to_html(self, caption: str = "Scan with another device to connect") -> str:
        """Generate a standalone HTML page with the QR code embedded."""
        qr = self._create_qr()
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        img_b64 = base64.b64encode(buffer.getvalue()).decode("ascii")

        return f"""<!DOCTYPE html>
<html>
<head>
    <title>pairlink</title>
    <style>
        body {{
            display: flex;
            flex-direction: column;
            align-items: center;
            justify-content: center;
            height: 100vh;
            margin: 0;
            background: #f3f4f6;
            font-family: system-ui, sans-serif;
        }}
        img {{ border: 10px solid white; border-radius: 10px; }}
        p {{ margin-top: 20px; color: #6b7280; }}
    </style>
</head>
<body>
    <img src="data:image/png;base64,{img_b64}" alt="QR Code">
    <p>{html.escape(caption)}</p>
</body>
</html>
"""
