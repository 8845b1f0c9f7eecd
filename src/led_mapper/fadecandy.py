"""
Fadecandy client speaking fcserver's native JSON-over-WebSocket API.

Unlike Open Pixel Control, this API can list the attached controllers and
address each one directly by serial number, bypassing fcserver's mapping,
dithering and color correction. Devices connecting or disconnecting while
we run are not handled.
"""
import json
import time
import logging
from collections import namedtuple

import websocket

from led_mapper.errors import FadecandyError

DEFAULT_URL = "ws://localhost:7890"
DEFAULT_TIMEOUT = 4.0

LEDS_PER_DEVICE = 512
LEDS_PER_STRIP = 64
STRIPS_PER_DEVICE = LEDS_PER_DEVICE // LEDS_PER_STRIP


Led = namedtuple("Led", ["device", "index", "strip_index", "strip_position", "name"])


def make_led(serial, index):
    return Led(device=serial,
               index=index,
               strip_index=index // LEDS_PER_STRIP,
               strip_position=index % LEDS_PER_STRIP,
               name=f"{serial}-{index}")


def leds_for_device(serial, strips=STRIPS_PER_DEVICE):
    """Every LED on the first `strips` outputs of one controller."""
    strips = min(strips, STRIPS_PER_DEVICE)
    return [make_led(serial, i) for i in range(strips * LEDS_PER_STRIP)]


def leds_for_device_list(devices, strips=STRIPS_PER_DEVICE):
    leds = []
    for device in devices:
        leds.extend(leds_for_device(device["serial"], strips))
    return leds


class FadecandyClient:
    """Blocking fcserver client. Every request fails after `timeout` seconds."""

    def __init__(self, url=DEFAULT_URL, timeout=DEFAULT_TIMEOUT):
        self.url = url
        self.timeout = timeout
        self.ws = None
        self.devices = []
        self.sequence = 1

    def connect(self):
        """Open the socket and fetch the list of attached controllers."""
        try:
            self.ws = websocket.create_connection(self.url, timeout=self.timeout)
        except (websocket.WebSocketException, OSError) as e:
            raise FadecandyError(f"Can't connect to fcserver at {self.url}: {e}") from e

        reply = self.message({"type": "list_connected_devices"})
        # Sort by serial number, for a stable ordering
        self.devices = sorted(reply.get("devices", []), key=lambda d: d["serial"])
        for device in self.devices:
            logging.info("Found Fadecandy device %s", device["serial"])
        return self

    def message(self, obj, timeout=None):
        """
        Send one request and wait for the reply carrying the same sequence number.

        Args:
            obj: JSON-serializable request; a "sequence" key is added.
            timeout: Seconds to wait for the reply (default: self.timeout).

        Returns:
            The decoded reply.
        """
        if self.ws is None:
            raise FadecandyError("Not connected to fcserver")

        timeout = timeout or self.timeout
        obj = dict(obj, sequence=self.sequence)
        self.sequence += 1
        msg_text = json.dumps(obj)
        deadline = time.monotonic() + timeout

        try:
            self.ws.send(msg_text)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise websocket.WebSocketTimeoutException()
                self.ws.settimeout(remaining)
                reply = json.loads(self.ws.recv())
                if reply.get("sequence") == obj["sequence"]:
                    break
                logging.debug("Ignoring stale fcserver reply %s", reply.get("sequence"))
        except websocket.WebSocketTimeoutException as e:
            raise FadecandyError(
                f"Timed out waiting for fcserver to respond to this message: {msg_text}") from e
        except (websocket.WebSocketException, OSError, ValueError) as e:
            raise FadecandyError(f"fcserver communication failed: {e}") from e

        if reply.get("error"):
            raise FadecandyError(f"fcserver error for {obj['type']}: {reply['error']}")
        return reply

    def raw_pixels(self, device, rgb):
        """
        Send RGB values straight to one controller, with interpolation,
        dithering and gamma correction disabled.
        """
        self.message({
            "type": "device_options",
            "device": device,
            "options": {"led": None, "dither": False, "interpolate": False},
        })
        self.message({
            "type": "device_color_correction",
            "device": device,
            "color": {"gamma": 1.0, "whitepoint": [1.0, 1.0, 1.0]},
        })
        self.message({
            "type": "device_pixels",
            "device": device,
            "pixels": [int(v) for v in rgb],
        })

    def set_all_off(self):
        """Turn all lights off, on all devices."""
        for device in self.devices:
            self.raw_pixels(device, [0] * (LEDS_PER_DEVICE * 3))

    def set_single(self, serial, index):
        """Turn a single light on at full brightness, and all others off."""
        if not 0 <= index < LEDS_PER_DEVICE:
            raise ValueError(f"LED index {index} out of range")
        for device in self.devices:
            pixels = [0] * (LEDS_PER_DEVICE * 3)
            if device["serial"] == serial:
                pixels[3 * index:3 * index + 3] = [255, 255, 255]
            self.raw_pixels(device, pixels)

    def close(self):
        if self.ws is None:
            return
        try:
            self.set_all_off()
        finally:
            self.ws.close()
            self.ws = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ConfigFactory:
    """
    Build an fcserver.json that maps a dense OPC index space onto
    specific controller outputs.

    Pixels are allocated in call order; consecutive pixels on the same
    controller collapse into a single [channel, first OPC, first output, count]
    map entry.
    """

    def __init__(self, listen=("127.0.0.1", 7890)):
        self.json = {
            "listen": list(listen),
            "verbose": True,
            "color": {"gamma": 2.5, "whitepoint": [1.0, 1.0, 1.0]},
            "devices": [],
        }
        self._devices = {}
        self.pixel_count = 0

    def _device(self, serial):
        device = self._devices.get(serial)
        if device is None:
            device = {"type": "fadecandy", "serial": serial, "map": []}
            self._devices[serial] = device
            self.json["devices"].append(device)
        return device

    def map_pixel(self, serial, index):
        """Allocate the next OPC index for LED `index` on controller `serial`."""
        opc_index = self.pixel_count
        self.pixel_count += 1

        mapping = self._device(serial)["map"]
        if mapping:
            last = mapping[-1]
            if last[1] + last[3] == opc_index and last[2] + last[3] == index:
                last[3] += 1
                return opc_index
        mapping.append([0, opc_index, index, 1])
        return opc_index
