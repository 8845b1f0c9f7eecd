"""
Data gathering for LED mapping:

  - Detects the attached Fadecandy controllers
  - Detects the length of attached LED strips
  - Takes high quality RAW photographs of each active LED
  - Generates tiny grayscale thumbnails and background-subtracted lightmaps
  - Writes results to "photos.json"

Photography is strictly serial, since there's one camera and one set of
lights. As soon as a photo has been taken the next LED is set up, while the
new photo is processed in the background on worker pools. Every step is
skipped if its result is already recorded, so an interrupted run can simply
be restarted.
"""
import os
import time
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import numpy as np

from led_mapper import imaging
from led_mapper.camera import get_driver
from led_mapper.errors import DerivationError, DeviceError
from led_mapper.fadecandy import (
    DEFAULT_URL, LEDS_PER_STRIP, STRIPS_PER_DEVICE,
    FadecandyClient, leds_for_device, leds_for_device_list,
)
from led_mapper.store import atomic_write


@dataclass
class PhotographerOptions:  # pylint: disable=too-many-instance-attributes
    """Tunables for one photography run, usually straight from the command line."""
    data: str
    processonly: bool = False
    concurrency: int = field(default_factory=lambda: os.cpu_count() or 1)
    thumbscale: int = 3
    noisethreshold: float = 10
    maxgap: int = 2
    darkinterval: float = 60
    denoise: int = 100
    blacklevel: int = 0
    strips: int = STRIPS_PER_DEVICE
    fcserver: str = DEFAULT_URL


def format_timestamp(t):
    """Seconds since the epoch -> ISO 8601 UTC string with milliseconds."""
    dt = datetime.fromtimestamp(t, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(text):
    return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()


def current_dark_frame_index(store, dark_interval, now):
    """
    Return a dark frame index to use for the current time.
    If the latest dark frame is still recent enough, returns its index.
    Otherwise returns the next unused index.
    """
    index = store.dark_frame_count - 1
    if index < 0:
        return 0

    frame = store.dark_frame(index)
    if not frame.timestamp:
        # Allocated but never taken
        return index
    if now - parse_timestamp(frame.timestamp) < dark_interval:
        return index
    return index + 1


def infer_strip_length(peak_diffs, noise_threshold, max_gap, capacity=LEDS_PER_STRIP):
    """
    Look for the end of a strip in a run of peakDiff values.

    Args:
        peak_diffs: peakDiff per strip position; None where not measured yet.
        noise_threshold: Below this an LED is considered missing.
        max_gap: This many consecutive missing LEDs end the strip.
        capacity: Maximum number of LEDs on a strip.

    Returns:
        The strip length, or None if there isn't enough information yet.
    """
    gap = None
    for i in range(capacity):
        value = peak_diffs[i] if i < len(peak_diffs) else None
        if value is None:
            # Not enough information yet
            return None

        if value >= noise_threshold:
            # LED is visible
            gap = None
            continue

        # LED appears to be missing, gap begins or continues
        if gap is None:
            gap = i
        if i - gap + 1 >= max_gap:
            # Assume this strip has ended
            return gap

    # Full length strip
    return capacity


def visiting_order(leds, store):
    """
    Shuffle LEDs with the persistent generator, then stable-sort by strip
    position.

    The shuffle decorrelates which controller and strip we visit from their
    physical position, while the sort keeps each strip in order so its end
    can be detected early. The generator state is saved before shuffling,
    so every run over the same devices visits LEDs in the same order.
    """
    rng = np.random.default_rng()
    if store.random_state:
        rng.bit_generator.state = store.random_state
    store.random_state = rng.bit_generator.state

    order = rng.permutation(len(leds))
    shuffled = [leds[i] for i in order]
    shuffled.sort(key=lambda led: led.strip_position)
    return shuffled


class Photographer:  # pylint: disable=too-many-instance-attributes
    """
    Runs photography and processing for every LED over one data directory.

    Args:
        options: PhotographerOptions.
        store: PhotoStore for options.data.
        ctx: SchedulerContext owning the worker pools.
        lights: Lighting controller (default: FadecandyClient).
        camera: CameraDriver (default: get_driver()).
        ops: Image reduction functions (default: led_mapper.imaging).
        clock: Wall clock, in seconds since the epoch.
    """

    # pylint: disable=too-many-arguments, too-many-positional-arguments
    def __init__(self, options, store, ctx, lights=None, camera=None, ops=imaging, clock=time.time):
        self.options = options
        self.store = store
        self.ctx = ctx
        self.ops = ops
        self.clock = clock
        self.lights = lights
        self.camera = camera
        self.captures = 0

        if not options.processonly:
            if self.lights is None:
                self.lights = FadecandyClient(options.fcserver)
            if self.camera is None:
                self.camera = get_driver()

    def _path(self, name):
        return self.store.artifact_path(name)

    def checkpoint(self, best_effort=False):
        """Save photos.json if it changed. Errors are only logged when best_effort is set."""
        try:
            self.store.checkpoint()
        except OSError:
            if not best_effort:
                raise

    # --- Devices ---

    async def open_devices(self):
        if self.options.processonly:
            return
        # Both must have finished before a failure is raised
        results = await asyncio.gather(
            asyncio.to_thread(self.lights.connect),
            asyncio.to_thread(self.camera.start),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def close_devices(self):
        if self.options.processonly:
            return
        await asyncio.to_thread(self.lights.close)
        await asyncio.to_thread(self.camera.stop)

    def collect_leds(self):
        if self.lights is not None:
            leds = leds_for_device_list(self.lights.devices, self.options.strips)
        else:
            # Without fcserver, walk the devices we already have records for
            leds = []
            for serial in self.store.device_serials():
                leds.extend(leds_for_device(serial, self.options.strips))
        return visiting_order(leds, self.store)

    # --- Photography ---

    async def photograph(self, name, photo, prepare):
        """
        Take a photo for `photo` unless it already has a valid RAW file.

        prepare() only runs if a photo is needed, right before the shutter.
        Returns as soon as the camera is free; the RAW data is written in the
        background, and the returned task finishes once rawFile is recorded.
        Returns None if nothing was taken.
        """
        if photo.raw_file:
            return None

        await prepare()
        data = await asyncio.to_thread(self.camera.capture)
        # Timestamp as soon as the photo was taken
        photo.record_capture(format_timestamp(self.clock()))
        self.captures += 1

        raw_file = f"raw-{name}{self.camera.raw_suffix}"

        async def save():
            await asyncio.to_thread(atomic_write, self._path(raw_file), data)
            photo.set_raw(raw_file)

        return self.ctx.pending.spawn(save(), name=f"save {raw_file}")

    async def photograph_dark_frame(self, index):
        """Make sure dark frame `index` has a RAW photo on disk."""
        frame = self.store.dark_frame(index, create=True)

        async def prepare():
            logging.info("Photographing dark frame %d", index)
            await asyncio.to_thread(self.lights.set_all_off)

        saved = await self.photograph(frame.name, frame, prepare)
        if saved is not None:
            # Dark frames are referenced by other photos; finish writing first
            await saved
        return frame

    async def photograph_led(self, led, light):
        async def prepare():
            if light.dark_frame is None:
                light.dark_frame = current_dark_frame_index(
                    self.store, self.options.darkinterval, self.clock())
            await self.photograph_dark_frame(light.dark_frame)

            logging.info("Photographing %s", led.name)
            await asyncio.to_thread(self.lights.set_single, led.device, led.index)

        return await self.photograph(led.name, light, prepare)

    # --- Processing ---

    async def generate_thumbnail(self, name, photo):
        """Generate a downsampled thumbnail if we don't already have one."""
        if photo.thumb_file:
            return
        if not photo.raw_file:
            raise DerivationError(f"No RAW photo for {name}")

        thumb_file = f"thumb-{name}.png"
        await self.ctx.run_fast(self.ops.make_thumbnail, self._path(photo.raw_file),
                                self._path(thumb_file), self.options.thumbscale)
        photo.set_thumbnail(thumb_file)
        logging.info("Processed thumbnail %s", name)

    async def dark_frame_thumbnail(self, frame):
        if frame.thumb_file:
            return
        await self.ctx.ledger.run(("thumb", frame.index),
                                  lambda: self.generate_thumbnail(frame.name, frame))

    async def dark_frame_pgm(self, frame):
        """Generate the PGM for a dark frame, shared by every LED that uses it."""
        async def extract():
            if frame.pgm_file:
                return
            if not frame.raw_file:
                raise DerivationError(f"No RAW photo for {frame.name}")
            pgm_file = f"pgm-{frame.name}.pgm"
            await self.ctx.run_slow(self.ops.extract_dark_pgm,
                                    self._path(frame.raw_file), self._path(pgm_file))
            frame.set_pgm(pgm_file)
            logging.info("Processed dark frame %d", frame.index)

        if frame.pgm_file:
            return
        await self.ctx.ledger.run(("pgm", frame.index), extract)

    def _dark_frame_for(self, light):
        frame = None
        if light.dark_frame is not None:
            frame = self.store.dark_frame(light.dark_frame)
        if frame is None:
            raise DerivationError(
                f"LED {light.device.serial}-{light.index} has no dark frame")
        return frame

    async def generate_peak_diff(self, light):
        """
        Peak difference between this LED's thumbnail and its dark frame's.
        Calculation is skipped if it's already been done.
        """
        if light.peak_diff is not None:
            return

        frame = self._dark_frame_for(light)
        await self.dark_frame_thumbnail(frame)
        light.peak_diff = await self.ctx.run_fast(
            self.ops.peak_difference, self._path(frame.thumb_file), self._path(light.thumb_file))

    def update_strip_length(self, serial, strip_index):
        """
        If we don't know this strip's length already, look for runs of LEDs
        with a peakDiff below our threshold.
        """
        device = self.store.device(serial)
        strip = device.strip(strip_index)
        if strip is not None and strip.length is not None:
            return

        peak_diffs = []
        for i in range(LEDS_PER_STRIP):
            light = device.light(strip_index * LEDS_PER_STRIP + i)
            peak_diffs.append(light.peak_diff if light is not None else None)

        length = infer_strip_length(peak_diffs, self.options.noisethreshold, self.options.maxgap)
        if length is not None:
            device.strip(strip_index, create=True).length = length
            logging.info("Strip %s/%d length is %d", serial, strip_index, length)

    async def generate_lightmap(self, name, light):
        """
        Generate a linear TIFF file that represents just the light coming from
        one LED, with the dark background subtracted.
        """
        if light.peak_diff < self.options.noisethreshold:
            if light.lightmap is not None:
                light.clear_lightmap()
            logging.debug("No light visible from %s (peakDiff %s)", name, light.peak_diff)
            return

        if light.light_file:
            return

        frame = self._dark_frame_for(light)
        await self.dark_frame_pgm(frame)

        light_file = f"light-{name}.tiff"
        await self.ctx.run_slow(self.ops.subtract_background,
                                self._path(light.raw_file), self._path(frame.pgm_file),
                                self._path(light_file), self.options.denoise,
                                self.options.blacklevel)
        light.set_lightmap(light_file)
        logging.info("Processed lightmap %s", name)

    async def generate_moments(self, name, light):
        if not light.light_file or light.has_moments:
            return
        moments, size = await self.ctx.run_fast(self.ops.compute_moments,
                                                self._path(light.light_file))
        light.set_moments(moments, size)
        logging.debug("Processed moments %s", name)

    async def process_led(self, led, light, raw_saved=None):
        """Asynchronous processing for each photo."""
        if raw_saved is not None:
            await raw_saved
        await self.generate_thumbnail(led.name, light)
        await self.generate_peak_diff(light)
        self.update_strip_length(led.device, led.strip_index)
        await self.generate_lightmap(led.name, light)
        await self.generate_moments(led.name, light)
        self.checkpoint()

    # --- Sequencing ---

    async def handle_led(self, led):
        """
        Photograph a single LED if needed and queue its processing.
        Returns as soon as the camera is free again.
        """
        create = not self.options.processonly
        device = self.store.device(led.device, create=create)
        if device is None:
            return

        strip = device.strip(led.strip_index, create=create)
        if strip is not None and strip.length is not None and led.strip_position >= strip.length:
            # Beyond the detected end of the strip
            logging.debug("Skipping %s, strip length is %d", led.name, strip.length)
            return

        light = device.light(led.index, create=create)
        if light is None:
            return

        raw_saved = None
        if self.options.processonly:
            if not light.raw_file:
                logging.debug("Skipping %s, no photo", led.name)
                return
        else:
            raw_saved = await self.photograph_led(led, light)
            self.checkpoint()

        self.ctx.pending.spawn(self.process_led(led, light, raw_saved), name=led.name)

    async def run(self):
        """Photograph and process every LED, then wait for all processing to finish."""
        try:
            await self.open_devices()
            for led in self.collect_leds():
                self.ctx.pending.raise_if_failed()
                await self.handle_led(led)

            logging.info("Waiting for processing tasks to complete")
            await self.ctx.pending.join()
        except BaseException:
            # Includes cancellation from an operator interrupt
            await self.ctx.pending.cancel()
            self.checkpoint(best_effort=True)
            try:
                await self.close_devices()
            except (DeviceError, OSError) as e:
                logging.warning("Failed to shut down devices: %s", e)
            raise

        await self.close_devices()
        self.checkpoint()
        logging.info("Done. %d photos taken.", self.captures)
