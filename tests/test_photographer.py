import os
import json
import asyncio
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

from led_mapper.errors import CameraError, DerivationError, FadecandyError
from led_mapper.fadecandy import make_led
from led_mapper.photographer import Photographer, PhotographerOptions, format_timestamp
from led_mapper.scheduler import SchedulerContext
from led_mapper.store import PhotoStore, atomic_write

from tests.fakes import FakeCamera, FakeLights, FakeOps

T0 = 1_500_000_000.0

# LEDs 0-4 are lit, then the strip ends
BRIGHTNESS = {0: 50, 1: 60, 2: 55, 3: 40, 4: 45}


class PhotographerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data = self.tmp.name
        self.pools = []

    def tearDown(self):
        for pool in self.pools:
            pool.shutdown(wait=True)
        self.tmp.cleanup()

    def make_photographer(self, processonly=False, ops=None, clock=None, on_capture=None, **kw):
        fast, slow = ThreadPoolExecutor(4), ThreadPoolExecutor(2)
        self.pools += [fast, slow]
        ctx = SchedulerContext(fast_pool=fast, slow_pool=slow)
        options = PhotographerOptions(data=self.data, processonly=processonly, strips=1, **kw)
        store = PhotoStore.load(self.data)
        lights = camera = None
        if not processonly:
            lights = FakeLights()
            camera = FakeCamera(lights, on_capture)
        return Photographer(options, store, ctx, lights=lights, camera=camera,
                            ops=ops or FakeOps(BRIGHTNESS), clock=clock or (lambda: T0))

    def read_photos(self):
        with open(os.path.join(self.data, "photos.json"), "rb") as f:
            return f.read()


class TestFullRun(PhotographerTestCase):
    def test_first_run_measures_strip(self):
        photographer = self.make_photographer()
        asyncio.run(photographer.run())

        doc = json.loads(self.read_photos())
        device = doc["devices"]["AAA"]
        self.assertEqual(device["strips"]["0"]["length"], 5)
        self.assertEqual(len(doc["darkFrames"]), 1)
        self.assertEqual(doc["darkFrames"][0]["timestamp"], format_timestamp(T0))

        for i in range(5):
            led = device["leds"][str(i)]
            self.assertEqual(led["peakDiff"], BRIGHTNESS[i])
            self.assertEqual(led["darkFrame"], 0)
            self.assertEqual(led["lightmap"]["file"], f"light-AAA-{i}.tiff")
            self.assertEqual(led["lightmap"]["centroid"], {"x": float(i), "y": 2.0})
            self.assertEqual(led["lightmap"]["size"], {"width": 64, "height": 48})
            self.assertTrue(os.path.exists(os.path.join(self.data, led["rawFile"])))

        # Below the noise threshold: measured but no lightmap
        self.assertEqual(device["leds"]["5"]["peakDiff"], 0)
        self.assertNotIn("lightmap", device["leds"]["5"])

        # Lights were left off, devices closed
        self.assertEqual(photographer.lights.calls[-1], ("off",))
        self.assertFalse(photographer.lights.connected)

    def test_dark_frame_work_is_done_once(self):
        ops = FakeOps(BRIGHTNESS)
        asyncio.run(self.make_photographer(ops=ops).run())

        self.assertEqual(ops.calls["extract_dark_pgm"], 1)
        dark_thumbs = [p for name, p in ops.paths if name == "make_thumbnail" and os.path.basename(p).startswith("raw-dark")]
        self.assertEqual(len(dark_thumbs), 1)
        self.assertEqual(ops.calls["subtract_background"], 5)

    def test_second_run_is_a_no_op(self):
        asyncio.run(self.make_photographer().run())
        first = self.read_photos()

        ops = FakeOps(BRIGHTNESS)
        photographer = self.make_photographer(ops=ops)
        asyncio.run(photographer.run())

        self.assertEqual(photographer.camera.captured, [])
        self.assertEqual(sum(ops.calls.values()), 0)
        self.assertEqual(self.read_photos(), first)

    def test_lost_thumbnail_is_regenerated(self):
        asyncio.run(self.make_photographer().run())
        before = json.loads(self.read_photos())["devices"]["AAA"]["leds"]["2"]
        os.unlink(os.path.join(self.data, before["thumbFile"]))

        ops = FakeOps(BRIGHTNESS)
        photographer = self.make_photographer(ops=ops)
        asyncio.run(photographer.run())

        after = json.loads(self.read_photos())["devices"]["AAA"]["leds"]["2"]
        self.assertEqual(photographer.camera.captured, [])
        self.assertEqual(ops.calls["make_thumbnail"], 1)
        self.assertEqual(ops.calls["peak_difference"], 1)
        self.assertEqual(ops.calls["subtract_background"], 0)
        self.assertEqual(after["rawFile"], before["rawFile"])
        self.assertEqual(after["timestamp"], before["timestamp"])
        self.assertEqual(after["peakDiff"], before["peakDiff"])
        self.assertEqual(after["lightmap"], before["lightmap"])

    def test_lost_raw_is_retaken_and_derived_data_redone(self):
        asyncio.run(self.make_photographer().run())
        before = json.loads(self.read_photos())["devices"]["AAA"]["leds"]["1"]
        os.unlink(os.path.join(self.data, before["rawFile"]))

        ops = FakeOps(BRIGHTNESS)
        photographer = self.make_photographer(ops=ops, clock=lambda: T0 + 10)
        asyncio.run(photographer.run())

        after = json.loads(self.read_photos())["devices"]["AAA"]["leds"]["1"]
        self.assertEqual(photographer.camera.captured, ["led AAA 1"])
        self.assertEqual(after["timestamp"], format_timestamp(T0 + 10))
        self.assertEqual(after["darkFrame"], 0)
        self.assertEqual(ops.calls["subtract_background"], 1)
        self.assertEqual(ops.calls["compute_moments"], 1)

    def test_process_only_uses_existing_photos(self):
        asyncio.run(self.make_photographer().run())
        for name in os.listdir(self.data):
            if name.startswith(("thumb-", "light-")):
                os.unlink(os.path.join(self.data, name))

        known = set(json.loads(self.read_photos())["devices"]["AAA"]["leds"])

        ops = FakeOps(BRIGHTNESS)
        photographer = self.make_photographer(processonly=True, ops=ops)
        asyncio.run(photographer.run())

        self.assertIsNone(photographer.camera)
        doc = json.loads(self.read_photos())
        self.assertEqual(ops.calls["subtract_background"], 5)
        self.assertEqual(doc["devices"]["AAA"]["leds"]["3"]["lightmap"]["centroid"]["x"], 3.0)
        # No records were invented for LEDs that were never photographed
        self.assertEqual(set(doc["devices"]["AAA"]["leds"]), known)

    def test_derivation_error_stops_run(self):
        ops = FakeOps(BRIGHTNESS, fail_on=lambda name, path: name == "compute_moments")
        photographer = self.make_photographer(ops=ops)

        with self.assertRaises(ValueError):
            asyncio.run(photographer.run())

        # Whatever completed was saved
        doc = json.loads(self.read_photos())
        self.assertIn("rawFile", doc["darkFrames"][0])
        self.assertLess(len(photographer.camera.captured), 65)

    def test_missing_raw_is_a_derivation_error(self):
        photographer = self.make_photographer(processonly=True)
        light = photographer.store.light("AAA", 0, create=True)

        with self.assertRaises(DerivationError):
            asyncio.run(photographer.generate_thumbnail("AAA-0", light))

    def test_interrupt_saves_progress(self):
        state = {}

        def on_capture(what):
            if what == "led AAA 1":
                state["loop"].call_soon_threadsafe(state["task"].cancel)

        photographer = self.make_photographer(on_capture=on_capture)

        async def interrupted():
            state["loop"] = asyncio.get_running_loop()
            state["task"] = asyncio.current_task()
            await photographer.run()

        with self.assertRaises(asyncio.CancelledError):
            asyncio.run(interrupted())

        doc = json.loads(self.read_photos())
        self.assertEqual(doc["devices"]["AAA"]["leds"]["0"]["timestamp"], format_timestamp(T0))
        self.assertNotIn("timestamp", doc["devices"]["AAA"]["leds"]["1"])


class TestDeviceFailures(PhotographerTestCase):
    def assert_lights_off(self, photographer):
        self.assertEqual(photographer.lights.calls[-1], ("off",))
        self.assertFalse(photographer.lights.connected)

    def test_camera_error_mid_run(self):
        def on_capture(what):
            if what == "led AAA 3":
                raise CameraError("usb gone")

        photographer = self.make_photographer(on_capture=on_capture)
        with self.assertRaisesRegex(CameraError, "usb gone"):
            asyncio.run(photographer.run())

        leds = json.loads(self.read_photos())["devices"]["AAA"]["leds"]
        for i in range(3):
            self.assertEqual(leds[str(i)]["timestamp"], format_timestamp(T0))
        self.assertIn("rawFile", leds["0"])
        self.assertNotIn("timestamp", leds["3"])
        self.assertNotIn("4", leds)
        self.assert_lights_off(photographer)

    def test_lighting_error_mid_run(self):
        photographer = self.make_photographer()
        lights = photographer.lights
        set_single = lights.set_single

        def failing_set_single(serial, index):
            if index == 2:
                raise FadecandyError("Timed out waiting for fcserver to respond")
            set_single(serial, index)

        lights.set_single = failing_set_single
        with self.assertRaises(FadecandyError):
            asyncio.run(photographer.run())

        self.assertEqual(photographer.camera.captured, ["dark", "led AAA 0", "led AAA 1"])
        leds = json.loads(self.read_photos())["devices"]["AAA"]["leds"]
        self.assertNotIn("timestamp", leds["2"])
        self.assert_lights_off(photographer)

    def test_camera_start_failure_closes_lights(self):
        photographer = self.make_photographer()
        photographer.camera.start = MagicMock(side_effect=CameraError("No camera found"))

        with self.assertRaises(CameraError):
            asyncio.run(photographer.run())

        self.assertEqual(photographer.camera.captured, [])
        self.assert_lights_off(photographer)

    def test_failed_raw_write_is_not_recorded(self):
        def flaky_write(path, data):
            if os.path.basename(path).startswith("raw-AAA-1"):
                raise OSError("No space left on device")
            atomic_write(path, data)

        photographer = self.make_photographer()
        with patch("led_mapper.photographer.atomic_write", side_effect=flaky_write):
            with self.assertRaisesRegex(OSError, "No space left"):
                asyncio.run(photographer.run())

        leds = json.loads(self.read_photos())["devices"]["AAA"]["leds"]
        self.assertEqual(leds["1"]["timestamp"], format_timestamp(T0))
        self.assertNotIn("rawFile", leds["1"])
        self.assertFalse(os.path.exists(os.path.join(self.data, "raw-AAA-1.CR2")))
        self.assertEqual(leds["0"]["rawFile"], "raw-AAA-0.CR2")
        self.assert_lights_off(photographer)


class TestDarkFrames(PhotographerTestCase):
    def test_stale_dark_frame_is_replaced(self):
        now = [T0]
        photographer = self.make_photographer(clock=lambda: now[0], darkinterval=60)

        async def shoot():
            await photographer.handle_led(make_led("AAA", 0))
            now[0] = T0 + 59
            await photographer.handle_led(make_led("AAA", 1))
            now[0] = T0 + 121
            await photographer.handle_led(make_led("AAA", 2))
            await photographer.ctx.pending.join()

        asyncio.run(shoot())

        store = photographer.store
        self.assertEqual([store.light("AAA", i).dark_frame for i in range(3)], [0, 0, 1])
        self.assertEqual(store.dark_frame_count, 2)
        self.assertEqual(photographer.camera.captured,
                         ["dark", "led AAA 0", "led AAA 1", "dark", "led AAA 2"])

    def test_concurrent_requests_share_one_pgm(self):
        ops = FakeOps(BRIGHTNESS)
        photographer = self.make_photographer(ops=ops)

        async def shoot():
            frame = await photographer.photograph_dark_frame(0)
            await asyncio.gather(photographer.dark_frame_pgm(frame),
                                 photographer.dark_frame_pgm(frame),
                                 photographer.dark_frame_thumbnail(frame),
                                 photographer.dark_frame_thumbnail(frame))
            return frame

        frame = asyncio.run(shoot())

        self.assertEqual(ops.calls["extract_dark_pgm"], 1)
        self.assertEqual(ops.calls["make_thumbnail"], 1)
        self.assertEqual(frame.pgm_file, "pgm-dark-0.pgm")
        self.assertEqual(frame.thumb_file, "thumb-dark-0.png")


class TestStripSkipping(PhotographerTestCase):
    def test_leds_past_strip_end_are_not_photographed(self):
        photographer = self.make_photographer()
        photographer.store.device("AAA", create=True).strip(0, create=True).length = 2

        async def shoot():
            for i in range(4):
                await photographer.handle_led(make_led("AAA", i))
            await photographer.ctx.pending.join()

        asyncio.run(shoot())

        self.assertEqual(photographer.camera.captured, ["dark", "led AAA 0", "led AAA 1"])
        self.assertIsNone(photographer.store.light("AAA", 3))


if __name__ == "__main__":
    unittest.main()
