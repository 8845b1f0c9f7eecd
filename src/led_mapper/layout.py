"""
led-layout: turn photometric data gathered by led-photographer into an
fcserver config file and an LED layout.

This can operate on a single photography run, or it can combine data from
multiple mapping sessions. Later inputs override earlier ones on a
per-controller basis.
"""
import sys
import json
import logging
import argparse

from led_mapper.fadecandy import ConfigFactory
from led_mapper.main import setup_logging

AXES = {"x": (1, 0, 0), "y": (0, 1, 0), "z": (0, 0, 1)}


def map_to_plane(x, y, plane="xy"):
    """Place a 2D image coordinate on one plane of 3D layout space."""
    return [x * AXES[plane[0]][i] + y * AXES[plane[1]][i] for i in range(3)]


def merge_devices(inputs):
    """
    Combine photos.json files into one device table.

    Returns:
        dict of serial -> (filename, device node)
    """
    devices = {}
    for filename in inputs:
        with open(filename, "r", encoding="utf-8") as f:
            photos = json.load(f)
        for serial, device in photos.get("devices", {}).items():
            devices[serial] = (filename, device)
    return devices


# pylint: disable=too-many-arguments
def build_layout(devices, center=False, width=None, plane="xy", factory=None):
    """
    Allocate OPC indices for every LED that has a usable lightmap.

    Returns:
        (layout, factory) where layout is indexed by OPC index.
    """
    factory = factory or ConfigFactory()
    layout = []

    for serial, (filename, device) in devices.items():
        logging.info("Device %s from %s", serial, filename)

        for key in sorted(device.get("leds", {}), key=int):
            led = device["leds"][key]
            lightmap = led.get("lightmap")
            if not lightmap:
                # Skipped entirely because it didn't show up on the thumbnail
                continue
            if "moments" not in lightmap:
                raise ValueError(f"Missing moments analysis for {serial}-{key}")

            size = lightmap["size"]
            x = lightmap["centroid"]["x"]
            y = lightmap["centroid"]["y"]
            if x is None or y is None:
                # Bright enough to pass the noise threshold on the thumbnail,
                # but nothing left above the black level
                continue

            opc_index = factory.map_pixel(serial, int(key))

            if center:
                x -= size["width"] / 2
                y -= size["height"] / 2
            if width is not None:
                s = width / size["width"]
                x *= s
                y *= s

            while len(layout) <= opc_index:
                layout.append(None)
            layout[opc_index] = {"point": map_to_plane(x, y, plane)}

    return layout, factory


def write_json(path, obj):
    with open(path, "w", encoding="utf-8") as f:
        f.write(json.dumps(obj, indent="\t") + "\n")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Generate an fcserver config and LED layout from photos.json files")
    parser.add_argument("inputs", nargs="+",
                       help="One or more input files (photos.json)")
    parser.add_argument("--layout", default="layout.json",
                       help="Path to JSON layout file we output")
    parser.add_argument("--config", default="fcserver.json",
                       help="Path to JSON config file we output")
    parser.add_argument("-c", "--center", action="store_true",
                       help="Place the origin at the center of the image [default: top-left]")
    parser.add_argument("-w", "--width", type=float,
                       help="Scale images to be this wide in layout units [default: unscaled pixels]")
    parser.add_argument("-p", "--plane", default="xy",
                       help="Which 2D plane should we extract into")
    parser.add_argument("--debug", action="store_true",
                       help="Enable debug logging")
    args = parser.parse_args(argv)
    setup_logging(args.debug)

    if len(args.plane) != 2 or any(axis not in AXES for axis in args.plane):
        parser.error("--plane must be two of x, y, z")

    try:
        layout, factory = build_layout(merge_devices(args.inputs), center=args.center,
                                       width=args.width, plane=args.plane)
        write_json(args.config, factory.json)
        write_json(args.layout, layout)
    except (OSError, ValueError, KeyError) as e:
        logging.error("%s", e)
        sys.exit(1)

    logging.info("Wrote %d LEDs to %s and %s", factory.pixel_count, args.layout, args.config)


if __name__ == "__main__":
    main()
