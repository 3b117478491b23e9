"""Node operations that run locally, without a generation provider."""

from __future__ import annotations

import base64
import binascii
import io
import re
from collections.abc import Mapping, Sequence

from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from .models import GridComposerData, GridSlot, MotionPromptData

_LAYOUT_RE = re.compile(r"^\s*(\d+)\s*[xX×]\s*(\d+)\s*$")
_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=-]+)*;base64,(?P<data>.*)$", re.DOTALL)


def combine_motion_prompt(data: MotionPromptData) -> str:
    parts = [data.base_prompt, data.camera_movement, data.subject_motion, data.lighting]
    return ", ".join(part.strip() for part in parts if part and part.strip())


def _clean_prompt(text: str) -> str:
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\s*,\s*(,\s*)+", ", ", text)
    text = re.sub(r"\s+,", ",", text)
    return text.strip().strip(",").strip()


def generate_slot_prompts(template: str, base_prompt: str, slots: Sequence[GridSlot]) -> dict[str, str]:
    """Fill ``template`` once per slot.

    Placeholders: ``{prompt}``, ``{label}``, ``{metadata}`` and ``{slot}``.
    Empty substitutions leave no dangling commas behind.
    """
    prompts: dict[str, str] = {}
    for slot in slots:
        text = (
            template.replace("{prompt}", base_prompt or "")
            .replace("{label}", slot.label or "")
            .replace("{metadata}", slot.metadata or "")
            .replace("{slot}", slot.id)
        )
        prompts[slot.id] = _clean_prompt(text)
    return prompts


def parse_grid_layout(layout: str) -> tuple[int, int]:
    """``"2x3"`` -> ``(2, 3)`` as (rows, cols)."""
    match = _LAYOUT_RE.match(layout or "")
    if not match:
        raise ValueError(f"Invalid grid layout: {layout!r}")
    rows, cols = int(match.group(1)), int(match.group(2))
    if rows < 1 or cols < 1:
        raise ValueError(f"Invalid grid layout: {layout!r}")
    return rows, cols


def decode_data_url(payload: str) -> bytes:
    match = _DATA_URL_RE.match(payload)
    raw = match.group("data") if match else payload
    try:
        return base64.b64decode(raw, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Payload is not a base64 image") from exc


def encode_data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def load_image(payload: str) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(decode_data_url(payload)))
        image.load()
    except UnidentifiedImageError as exc:
        raise ValueError("Payload is not a readable image") from exc
    return image


def _to_data_url(image: Image.Image, fmt: str, **save_args: object) -> str:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **save_args)
    return encode_data_url(buffer.getvalue(), f"image/{fmt.lower()}")


def split_grid_image(payload: str, rows: int, cols: int, slot_ids: Sequence[str]) -> dict[str, str]:
    """Cut a grid image into per-slot JPEG data URLs, row-major, one per slot id."""
    image = load_image(payload).convert("RGB")
    cell_w = image.width // cols
    cell_h = image.height // rows
    if cell_w < 1 or cell_h < 1:
        raise ValueError("Grid image is smaller than its layout")

    cells: dict[str, str] = {}
    for index, slot_id in enumerate(slot_ids):
        if index >= rows * cols:
            break
        row, col = divmod(index, cols)
        box = (col * cell_w, row * cell_h, (col + 1) * cell_w, (row + 1) * cell_h)
        cells[slot_id] = _to_data_url(image.crop(box), "JPEG", quality=90)
    return cells


def _fit(image: Image.Image, size: tuple[int, int], mode: str, background: tuple[int, ...]) -> Image.Image:
    if mode == "stretch":
        return image.resize(size)
    if mode == "cover":
        return ImageOps.fit(image, size)
    return ImageOps.pad(image, size, color=background)


def compose_grid(
    rows: int,
    cols: int,
    slots: Sequence[GridSlot],
    images: Mapping[str, str],
    options: GridComposerData,
    cell_size: tuple[int, int] | None = None,
) -> str:
    """Lay slot images out on a single PNG sheet. Slots without an image stay blank."""
    decoded = {slot_id: load_image(payload).convert("RGB") for slot_id, payload in images.items()}
    if cell_size is None:
        first = next(iter(decoded.values()), None)
        cell_size = first.size if first is not None else (512, 512)
    cell_w, cell_h = cell_size
    pad = max(options.cell_padding, 0)
    background = ImageColor.getrgb(options.background_color)

    sheet = Image.new(
        "RGB",
        (cols * cell_w + (cols + 1) * pad, rows * cell_h + (rows + 1) * pad),
        background,
    )
    draw = ImageDraw.Draw(sheet)
    font = ImageFont.load_default(size=options.label_size)

    for index, slot in enumerate(slots[: rows * cols]):
        row, col = divmod(index, cols)
        x = pad + col * (cell_w + pad)
        y = pad + row * (cell_h + pad)
        image = decoded.get(slot.id)
        if image is not None:
            sheet.paste(_fit(image, (cell_w, cell_h), options.aspect_ratio_mode, background), (x, y))
        if options.show_borders and options.border_width > 0:
            draw.rectangle(
                (x, y, x + cell_w - 1, y + cell_h - 1),
                outline=options.border_color,
                width=options.border_width,
            )
        if options.show_labels and slot.label:
            draw.text((x + 8, y + 8), slot.label, fill=options.label_color, font=font)

    return _to_data_url(sheet, "PNG")
