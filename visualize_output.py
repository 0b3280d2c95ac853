import os
import sys
import json
import argparse
from PIL import ImageDraw, ImageFont

from formfields.errors import RenderError
from formfields.utils.image import get_page_count, render_page


# Color scheme by field type
TYPE_COLORS = {
    "TEXT":         (30, 144, 255),   # dodger blue
    "NUMBER":       (0, 100, 200),    # dark blue
    "DATE":         (34, 139, 34),    # forest green
    "CHECKBOX":     (255, 140, 0),    # orange
    "RADIO":        (255, 140, 0),    # orange
    "SIGNATURE":    (148, 0, 211),    # purple
    "DROPDOWN":     (0, 180, 180),    # teal
    "STATIC_LABEL": (180, 180, 180),  # light gray
    "UNKNOWN":      (200, 200, 200),
}

# Vision-added fields and extrapolated table rows
LOW_CONFIDENCE_COLOR = (255, 50, 50)  # red


def _get_font(size=12):
    """Try to load a readable font, fall back to PIL default."""
    if sys.platform == "win32":
        candidates = [
            "C:/Windows/Fonts/consola.ttf",
            "C:/Windows/Fonts/arial.ttf",
        ]
    elif sys.platform == "darwin":
        candidates = [
            "/System/Library/Fonts/Menlo.ttc",
            "/Library/Fonts/Arial.ttf",
        ]
    else:
        candidates = [
            "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
            "/usr/share/fonts/truetype/liberation/LiberationMono-Regular.ttf",
        ]
    for path in candidates:
        if os.path.exists(path):
            try:
                return ImageFont.truetype(path, size)
            except OSError:
                continue
    return ImageFont.load_default()


def _truncate(text, max_len=35):
    """Truncate text for display."""
    if not text:
        return ""
    text = text.replace("\n", " ").strip()
    if len(text) > max_len:
        return text[:max_len - 1] + "\u2026"
    return text


def to_pixels(box, width, height):
    """Normalized {left, top, width, height} -> pixel [x1, y1, x2, y2]."""
    x1 = box["left"] * width
    y1 = box["top"] * height
    return [int(x1), int(y1), int(x1 + box["width"] * width), int(y1 + box["height"] * height)]


def _draw_label(draw, rect, label, color, font):
    """Draw a text label above a rectangle on a dark background."""
    x1, y1 = rect[0], rect[1]
    try:
        text_bbox = font.getbbox(label)
        tw = text_bbox[2] - text_bbox[0]
        th = text_bbox[3] - text_bbox[1]
    except AttributeError:
        tw, th = len(label) * 7, 12

    label_y = y1 - th - 4
    if label_y < 0:
        label_y = y1 + 2
    draw.rectangle([x1, label_y, x1 + tw + 4, label_y + th + 2], fill=(0, 0, 0))
    draw.text((x1 + 2, label_y), label, fill=color, font=font)


def draw_legend(draw, img_width, font):
    """Draw a color legend in the top-right corner."""
    legend_items = [(name.lower(), color) for name, color in TYPE_COLORS.items() if name != "UNKNOWN"]
    legend_items.append(("low confidence", LOW_CONFIDENCE_COLOR))

    line_h = 16
    padding = 8
    legend_w = 150
    legend_h = len(legend_items) * line_h + padding * 2
    x0 = img_width - legend_w - 10
    y0 = 10

    draw.rectangle([x0, y0, x0 + legend_w, y0 + legend_h], fill=(0, 0, 0))
    for i, (name, color) in enumerate(legend_items):
        y = y0 + padding + i * line_h
        draw.rectangle([x0 + padding, y + 2, x0 + padding + 10, y + 12], fill=color)
        draw.text((x0 + padding + 14, y), name, fill=(255, 255, 255), font=font)


def draw_page_fields(image, fields, show_labels=True, show_static=False, min_confidence=0.9):
    """Draw one page's fields onto a copy of the page image."""
    img = image.convert("RGB")
    draw = ImageDraw.Draw(img)
    font = _get_font(9)
    drawn = 0

    for field in fields:
        field_type = field.get("fieldType", "UNKNOWN")
        if field_type == "STATIC_LABEL" and not show_static:
            continue
        box = field.get("boundingBox") or field.get("labelBoundingBox")
        if not box:
            continue

        color = TYPE_COLORS.get(field_type, TYPE_COLORS["UNKNOWN"])
        confidence = field.get("confidence") or 0.0
        # Provider confidence is 0-100; generated fields use 0-1
        if confidence <= 1.0 and confidence < min_confidence:
            color = LOW_CONFIDENCE_COLOR

        rect = to_pixels(box, img.width, img.height)
        draw.rectangle(rect, outline=color, width=2)
        if show_labels:
            label = _truncate(field.get("fieldName"))
            if field.get("required"):
                label += " *"
            _draw_label(draw, rect, label, color, font)
        drawn += 1

    draw_legend(draw, img.width, font)
    return img, drawn


def visualize_document(document_path, json_path, output_dir, show_labels=True, show_static=False):
    """Render every page of a document and overlay its extracted fields."""
    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    fields_by_page = {}
    for field in data.get("fields", []):
        fields_by_page.setdefault(field.get("page", 1), []).append(field)

    base = os.path.splitext(os.path.basename(document_path))[0]
    for page_index in range(get_page_count(document_path)):
        page = page_index + 1
        try:
            image = render_page(document_path, page_index)
        except RenderError as e:
            print(f"  page {page}: {e}")
            continue
        img, drawn = draw_page_fields(image, fields_by_page.get(page, []),
                                      show_labels=show_labels, show_static=show_static)
        output_path = os.path.join(output_dir, f"{base}_page{page}.png")
        img.save(output_path)
        print(f"  {base} page {page}: {drawn} fields -> {output_path}")


def main():
    parser = argparse.ArgumentParser(
        description="Overlay extracted form fields on rendered pages.")
    parser.add_argument("--input", type=str, required=True,
                        help="Source PDF or image")
    parser.add_argument("--json", type=str, required=True,
                        help="JSON output from main.py")
    parser.add_argument("--output_dir", type=str, default="output/visualized",
                        help="Directory to save visualized pages")
    parser.add_argument("--no-labels", action="store_true",
                        help="Hide field name labels")
    parser.add_argument("--show-static", action="store_true",
                        help="Also draw STATIC_LABEL fields")

    args = parser.parse_args()

    os.makedirs(args.output_dir, exist_ok=True)
    try:
        visualize_document(args.input, args.json, args.output_dir,
                           show_labels=not args.no_labels, show_static=args.show_static)
    except (OSError, ValueError, KeyError) as e:
        print(f"Error visualizing {args.input}: {e}")
        return 1
    print(f"Visualization complete. Check {args.output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
