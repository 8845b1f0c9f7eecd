"""Still camera drivers for taking RAW photos."""
import re
import logging
import subprocess

from led_mapper.errors import CameraError

GPHOTO2 = "gphoto2"


class CameraDriver:
    """Base class for camera drivers."""
    raw_suffix = ".raw"

    def start(self):
        """Start the camera."""

    def stop(self):
        """Stop the camera."""

    def capture(self):
        """Take one photo and return the RAW file contents."""
        raise NotImplementedError


class GPhotoCameraDriver(CameraDriver):
    """Tethered DSLR driven through the gphoto2 command line tool."""
    raw_suffix = ".CR2"

    def __init__(self, port=None):
        self.port = port
        self.model = None

    def _run(self, *args):
        cmd = [GPHOTO2]
        if self.port:
            cmd += ["--port", self.port]
        cmd += list(args)
        try:
            result = subprocess.run(cmd, capture_output=True, check=True)
        except FileNotFoundError as exc:
            raise CameraError(f"{GPHOTO2} is not installed") from exc
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.decode("utf-8", errors="replace").strip()
            raise CameraError(f"{' '.join(cmd)} failed: {stderr}") from exc
        return result.stdout

    def detect(self):
        """Return (model, port) of the first attached camera, or None."""
        output = self._run("--auto-detect").decode("utf-8", errors="replace")
        # Skip the "Model  Port" header and the dashed rule
        for line in output.splitlines()[2:]:
            match = re.match(r"^(.*?)\s{2,}(\S+)\s*$", line)
            if match:
                return match.group(1).strip(), match.group(2)
        return None

    def start(self):
        found = self.detect()
        if not found:
            raise CameraError("No camera found: Make sure it's connected and awake")
        self.model, port = found
        self.port = self.port or port
        logging.info("Connected to %s", self.model)

        # Capture images to internal RAM
        logging.info("Setting up camera...")
        self._run("--set-config", "capturetarget=0")
        logging.info("Camera configured successfully")

    def capture(self):
        data = self._run("--capture-image-and-download", "--stdout")
        if not data:
            raise CameraError("Camera returned an empty image")
        return data


def get_driver():
    """Factory method to get the appropriate camera driver."""
    return GPhotoCameraDriver()
