"""
Test ride waiver documents.

The signed waiver is stored as a one-page PNG (the storage bucket only
accepts images). An HTML rendering of the same text is available for
display and printing.
"""
import base64
import binascii
import html
import io
import logging
from datetime import datetime
from typing import List

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

logger = logging.getLogger(__name__)

PAGE_WIDTH = 1200
PAGE_HEIGHT = 1600
MARGIN = 40
TEXT_WIDTH = PAGE_WIDTH - 2 * MARGIN
SIGNATURE_BOX = (600, 160)

TEXT_COLOR = "#0f172a"
MUTED_COLOR = "#475569"
BOX_COLOR = "#cbd5e1"
RULE_COLOR = "#94a3b8"


class WaiverRenderError(Exception):
    """The waiver document could not be produced."""


def waiver_paragraphs(shop_name: str) -> List[str]:
    return [
        "I acknowledge that riding an electric bicycle involves inherent risks, including risk of serious injury.",
        "I am competent to operate a bicycle, will obey all traffic laws, and will use appropriate safety equipment.",
        "I accept full responsibility for my actions during this test ride and agree to return the bicycle "
        "by the agreed time in the same condition received.",
        f"I release and hold harmless {shop_name}, its owners and employees from any and all claims "
        f"arising from my participation.",
        "By signing below, I acknowledge I have read and agree to the terms above.",
    ]


def decode_data_url(data_url: str) -> bytes:
    """
    Decode a base64 image data URL (data:image/png;base64,...).

    Raises:
        ValueError: not an image data URL or not valid base64
    """
    if not data_url or not data_url.startswith("data:image/") or "," not in data_url:
        raise ValueError("Signature must be an image data URL")
    header, encoded = data_url.split(",", 1)
    if not header.endswith(";base64"):
        raise ValueError("Signature data URL must be base64 encoded")
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Signature data URL is not valid base64") from e


def _font(size: int):
    return ImageFont.load_default(size=size)


def _wrap(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> List[str]:
    lines = []
    line = ""
    for word in text.split(" "):
        candidate = f"{line} {word}".strip()
        if line and draw.textlength(candidate, font=font) > max_width:
            lines.append(line)
            line = word
        else:
            line = candidate
    if line:
        lines.append(line)
    return lines


def render_waiver_png(
    shop_name: str,
    customer_name: str,
    signed_at: datetime,
    signature_data_url: str = None,
) -> bytes:
    """
    Render the waiver page with the signature embedded.

    A signature that cannot be decoded leaves an empty signature box, the
    same as an unsigned page.

    Raises:
        WaiverRenderError: Pillow failed to produce the PNG
    """
    try:
        page = Image.new("RGB", (PAGE_WIDTH, PAGE_HEIGHT), "white")
        draw = ImageDraw.Draw(page)

        draw.text((MARGIN, 50), f"{shop_name} - Test Ride Waiver & Release", font=_font(36), fill=TEXT_COLOR)
        draw.text(
            (MARGIN, 100),
            f"Signed by {customer_name} on {signed_at.strftime('%Y-%m-%d %H:%M')}",
            font=_font(20),
            fill=MUTED_COLOR,
        )

        body_font = _font(20)
        y = 160
        for paragraph in waiver_paragraphs(shop_name):
            for line in _wrap(draw, paragraph, body_font, TEXT_WIDTH):
                draw.text((MARGIN, y), line, font=body_font, fill=TEXT_COLOR)
                y += 32
            y += 8

        y += 40
        draw.text((MARGIN, y), "Signature", font=_font(24), fill=TEXT_COLOR)
        y += 40

        box = (MARGIN, y, MARGIN + SIGNATURE_BOX[0], y + SIGNATURE_BOX[1])
        signature = _load_signature(signature_data_url)
        if signature is not None:
            page.paste(signature.resize(SIGNATURE_BOX), (MARGIN, y))
        else:
            draw.rectangle(box, outline=BOX_COLOR)

        y += SIGNATURE_BOX[1] + 20
        draw.line((MARGIN, y, MARGIN + SIGNATURE_BOX[0], y), fill=RULE_COLOR, width=1)
        draw.text((MARGIN, y + 8), customer_name, font=_font(18), fill=MUTED_COLOR)

        buffer = io.BytesIO()
        page.save(buffer, format="PNG")
        return buffer.getvalue()
    except (OSError, ValueError) as e:
        logger.error(f"Waiver render failed for {customer_name}: {e}")
        raise WaiverRenderError(f"Could not render waiver: {e}") from e


def _load_signature(signature_data_url: str):
    if not signature_data_url:
        return None
    try:
        raw = decode_data_url(signature_data_url)
        with Image.open(io.BytesIO(raw)) as img:
            img = img.convert("RGBA")
            # Flatten transparent strokes onto white
            background = Image.new("RGBA", img.size, (255, 255, 255, 255))
            return Image.alpha_composite(background, img).convert("RGB")
    except (ValueError, UnidentifiedImageError, OSError) as e:
        logger.warning(f"Signature image skipped in waiver: {e}")
        return None


def generate_waiver_html(
    business_name: str,
    customer_name: str,
    customer_phone: str,
    signed_at: datetime,
    signature_data_url: str,
) -> str:
    """HTML version of the signed waiver."""
    business = html.escape(business_name)
    name = html.escape(customer_name)
    phone = html.escape(customer_phone)
    date_str = signed_at.strftime("%m/%d/%Y, %I:%M:%S %p")
    signature = html.escape(signature_data_url, quote=True)

    return f"""<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{business} Test Ride Waiver</title>
    <style>
      body {{ font-family: -apple-system, BlinkMacSystemFont, Segoe UI, Roboto, Helvetica, Arial, sans-serif; line-height: 1.5; color: #0f172a; padding: 24px; }}
      h1 {{ font-size: 20px; margin: 0 0 8px; }}
      h2 {{ font-size: 16px; margin: 16px 0 8px; }}
      .meta {{ color: #475569; font-size: 14px; margin-bottom: 16px; }}
      .box {{ background: #f8fafc; border: 1px solid #e2e8f0; border-radius: 8px; padding: 12px; }}
      .sig {{ margin-top: 24px; }}
      .sig img {{ display: block; height: 80px; border: 1px solid #e2e8f0; background: white; padding: 4px; }}
      .sigline {{ margin-top: 8px; border-top: 1px solid #cbd5e1; padding-top: 4px; font-size: 14px; }}
    </style>
  </head>
  <body>
    <h1>{business} Test Ride Waiver &amp; Release</h1>
    <div class="meta">Signed by {name} (Phone: {phone}) on {date_str}</div>
    <div class="box">
      <p>
        I, the undersigned, acknowledge that riding an electric bicycle involves inherent risks, including the
        risk of serious injury. I am competent to operate a bicycle, will obey all traffic laws, and will use
        appropriate safety equipment at all times. I accept full responsibility for my actions during this
        test ride and agree to return the bicycle by the agreed time in the same condition received.
      </p>
      <p>
        I hereby release and hold harmless {business}, its owners, employees, and affiliates from any
        and all claims, liabilities, damages, or expenses arising from or related to my participation in the
        test ride. I agree to pay for any damage or loss sustained to the bicycle due to my misuse or negligence.
      </p>
      <p>
        By signing below, I confirm that I have read, understand, and agree to the terms above.
      </p>
    </div>
    <div class="sig">
      <h2>Signature</h2>
      <img src="{signature}" alt="Signature" />
      <div class="sigline">{name} - {date_str}</div>
    </div>
  </body>
</html>"""
