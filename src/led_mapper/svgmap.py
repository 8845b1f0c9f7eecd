"""
led-svgmap: convert an LED layout to an annotated SVG file that can be
edited by hand in a vector editor, or merge edits back into the layout.

Each LED is a zero-length line with a round stroke, so that envelope-style
distortions move the point without changing how it is drawn.
"""
import os
import json
import logging
import argparse
import xml.etree.ElementTree as ET

from led_mapper.main import setup_logging

SVG_NS = "http://www.w3.org/2000/svg"

ET.register_namespace("", SVG_NS)


def led_id(index):
    return f"led-{index}"


def svg_from_layout(layout, width=2604, height=1738, stroke=5):
    """Build an SVG element tree with one line per layout point."""
    root = ET.Element(f"{{{SVG_NS}}}svg", {
        "version": "1.1",
        "width": str(width),
        "height": str(height),
    })
    for i, node in enumerate(layout):
        if not node or not node.get("point"):
            continue
        x, y = node["point"][0], node["point"][1]
        ET.SubElement(root, f"{{{SVG_NS}}}line", {
            "id": led_id(i),
            "fill": "none",
            "stroke": "#000000",
            "stroke-width": str(stroke),
            "stroke-linecap": "round",
            "x1": str(x),
            "x2": str(x),
            "y1": str(y),
            "y2": str(y),
        })
    return ET.ElementTree(root)


def update_layout(layout, tree):
    """
    Copy edited positions from the SVG back into layout points.

    Returns:
        Number of LEDs missing from the SVG.
    """
    lines = {}
    for line in tree.getroot().iter(f"{{{SVG_NS}}}line"):
        if line.get("id"):
            lines[line.get("id")] = line

    missing = 0
    for i, node in enumerate(layout):
        if not node or not node.get("point"):
            continue
        line = lines.get(led_id(i))
        if line is None:
            logging.warning("Missing element for LED %d", i)
            missing += 1
            continue
        node["point"][0] = float(line.get("x1"))
        node["point"][1] = float(line.get("y1"))
    return missing


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Create an editable SVG from a layout, or merge SVG edits into it")
    parser.add_argument("-l", "--layout", required=True,
                       help="Layout JSON file")
    parser.add_argument("-s", "--svg",
                       help="SVG file to create or merge")
    parser.add_argument("--stroke", type=float, default=5,
                       help="Stroke width for points")
    parser.add_argument("--width", type=int, default=2604,
                       help="Width of SVG, in pixels")
    parser.add_argument("--height", type=int, default=1738,
                       help="Height of SVG, in pixels")
    parser.add_argument("--debug", action="store_true",
                       help="Enable debug logging")
    args = parser.parse_args(argv)
    setup_logging(args.debug)

    svg_path = args.svg or os.path.splitext(args.layout)[0] + ".svg"
    with open(args.layout, "r", encoding="utf-8") as f:
        layout = json.load(f)

    if os.path.exists(svg_path):
        update_layout(layout, ET.parse(svg_path))
        with open(args.layout, "w", encoding="utf-8") as f:
            f.write(json.dumps(layout, indent="\t") + "\n")
        logging.info("Updated layout %s", args.layout)
    else:
        tree = svg_from_layout(layout, args.width, args.height, args.stroke)
        tree.write(svg_path, encoding="utf-8", xml_declaration=True)
        logging.info("Created %s", svg_path)


if __name__ == "__main__":
    main()
