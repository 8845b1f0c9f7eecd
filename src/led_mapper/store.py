"""
Persistent measurement store for the photographer.

The whole run is described by a single JSON document ("photos.json") kept in
the data directory next to every photo and derived image:

    {
        "devices": {serial: {"strips": {n: {...}}, "leds": {index: {...}}}},
        "darkFrames": [{...}, ...],
        "random": {...}
    }

The document is only ever extended. Entity views (Device, Strip, Light,
BackgroundFrame) wrap the underlying dict nodes so that invalidation rules
live in one place, and any artifact reference whose file is missing on disk
is treated as absent.
"""
import os
import json
import logging
import tempfile

PHOTOS_FILENAME = "photos.json"


def atomic_write(path, data):
    """
    Write data to path so that a partial file is never visible under path.

    Args:
        path: Destination file path.
        data: bytes or str payload.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")

    directory, name = os.path.split(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix="." + name, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class _Node:
    """Thin typed view over one dict in the document."""

    def __init__(self, store, node):
        self.store = store
        self.node = node

    def _file(self, key):
        """Return the artifact filename under key, or None if it isn't on disk."""
        name = self.node.get(key)
        if name and self.store.has_artifact(name):
            return name
        return None

    def _clear(self, *keys):
        for key in keys:
            self.node.pop(key, None)


class _Photo(_Node):
    """Fields shared by LED photos and dark frames."""

    @property
    def timestamp(self):
        return self.node.get("timestamp")

    @property
    def raw_file(self):
        return self._file("rawFile")

    @property
    def thumb_file(self):
        return self._file("thumbFile")

    def record_capture(self, timestamp):
        """
        A new photo was just taken. Everything derived from the previous
        raw image no longer applies.
        """
        self.node["timestamp"] = timestamp
        self._clear("rawFile", *self.DERIVED)

    def set_raw(self, filename):
        self.node["rawFile"] = filename

    def set_thumbnail(self, filename):
        self._clear(*self.THUMB_DERIVED)
        self.node["thumbFile"] = filename


class BackgroundFrame(_Photo):
    """A photo taken with every LED off."""
    DERIVED = ("thumbFile", "pgmFile")
    THUMB_DERIVED = ()

    def __init__(self, store, index, node):
        super().__init__(store, node)
        self.index = index

    @property
    def name(self):
        return dark_frame_name(self.index)

    @property
    def pgm_file(self):
        return self._file("pgmFile")

    def set_pgm(self, filename):
        self.node["pgmFile"] = filename


class Light(_Photo):
    """One LED, identified by device serial and absolute index."""
    DERIVED = ("thumbFile", "peakDiff", "lightmap")
    THUMB_DERIVED = ("peakDiff",)

    def __init__(self, store, device, index, node):
        super().__init__(store, node)
        self.device = device
        self.index = index

    @property
    def dark_frame(self):
        return self.node.get("darkFrame")

    @dark_frame.setter
    def dark_frame(self, index):
        self.node["darkFrame"] = index

    @property
    def peak_diff(self):
        return self.node.get("peakDiff")

    @peak_diff.setter
    def peak_diff(self, value):
        self.node["peakDiff"] = value

    @property
    def lightmap(self):
        return self.node.get("lightmap")

    @property
    def light_file(self):
        lightmap = self.node.get("lightmap")
        if lightmap and lightmap.get("file") and self.store.has_artifact(lightmap["file"]):
            return lightmap["file"]
        return None

    @property
    def has_moments(self):
        return bool(self.light_file and "moments" in self.node["lightmap"])

    def set_lightmap(self, filename):
        """Start a fresh lightmap record; moments are derived from it later."""
        self.node["lightmap"] = {"file": filename}

    def set_moments(self, moments, size):
        """
        Record raw image moments for the lightmap and derive its centroid.

        Args:
            moments: dict of raw moments (m00, m10, m01, ...).
            size: (width, height) of the lightmap image.
        """
        lightmap = self.node["lightmap"]
        m00 = moments.get("m00", 0)
        lightmap["moments"] = moments
        lightmap["size"] = {"width": size[0], "height": size[1]}
        if m00:
            lightmap["centroid"] = {"x": moments["m10"] / m00, "y": moments["m01"] / m00}
        else:
            # All-zero lightmap, nothing survived the black level
            lightmap["centroid"] = {"x": None, "y": None}

    def clear_lightmap(self):
        self._clear("lightmap")


class Strip(_Node):
    """A run of LEDs on one controller output."""

    def __init__(self, store, device, index, node):
        super().__init__(store, node)
        self.device = device
        self.index = index

    @property
    def length(self):
        return self.node.get("length")

    @length.setter
    def length(self, value):
        if self.node.get("length") is not None:
            raise ValueError(f"Strip {self.device.serial}/{self.index} length is already known")
        self.node["length"] = value


class Device(_Node):
    """One LED controller, keyed by serial number."""

    def __init__(self, store, serial, node):
        super().__init__(store, node)
        self.serial = serial

    def strip(self, index, create=False):
        strips = self.node.setdefault("strips", {}) if create else self.node.get("strips", {})
        node = strips.get(str(index))
        if node is None:
            if not create:
                return None
            node = strips[str(index)] = {}
        return Strip(self.store, self, index, node)

    def light(self, index, create=False):
        leds = self.node.setdefault("leds", {}) if create else self.node.get("leds", {})
        node = leds.get(str(index))
        if node is None:
            if not create:
                return None
            node = leds[str(index)] = {}
        return Light(self.store, self, index, node)


def dark_frame_name(index):
    return f"dark-{index}"


class PhotoStore:
    """
    The photos.json document plus the directory it describes.

    checkpoint() only touches the disk when the serialized document differs
    from what was last loaded or written, and always replaces the file
    atomically.
    """

    def __init__(self, data_path, doc, last_saved):
        self.data_path = data_path
        self.path = os.path.join(data_path, PHOTOS_FILENAME)
        self.doc = doc
        self._last_saved = last_saved

        doc.setdefault("devices", {})
        doc.setdefault("darkFrames", [])

    @classmethod
    def load(cls, data_path):
        """Load photos.json from data_path, or start an empty document."""
        if not os.path.isdir(data_path):
            raise NotADirectoryError(
                "Data path must be a directory. Create a new empty directory to start from scratch.")

        path = os.path.join(data_path, PHOTOS_FILENAME)
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        else:
            text = "{}"

        store = cls(data_path, json.loads(text), text)
        logging.info("Loaded %s: %d devices, %d dark frames",
                     store.path, len(store.doc["devices"]), len(store.doc["darkFrames"]))
        return store

    def serialize(self):
        return json.dumps(self.doc, indent="\t", ensure_ascii=False)

    def checkpoint(self):
        """
        Write the document if it changed since the last write.

        Returns:
            True if the file was rewritten.
        """
        text = self.serialize()
        if text == self._last_saved:
            return False
        try:
            atomic_write(self.path, text)
        except OSError as e:
            logging.error("Failed to write %s: %s", self.path, e)
            raise
        self._last_saved = text
        logging.debug("Checkpointed %s", self.path)
        return True

    # --- Artifacts ---

    def artifact_path(self, name):
        return os.path.join(self.data_path, name)

    def has_artifact(self, name):
        return os.path.exists(self.artifact_path(name))

    # --- Entities ---

    def device_serials(self):
        return list(self.doc["devices"])

    def device(self, serial, create=False):
        node = self.doc["devices"].get(serial)
        if node is None:
            if not create:
                return None
            node = self.doc["devices"][serial] = {"strips": {}, "leds": {}}
        return Device(self, serial, node)

    def light(self, serial, index, create=False):
        device = self.device(serial, create)
        return device.light(index, create) if device else None

    @property
    def dark_frame_count(self):
        return len(self.doc["darkFrames"])

    def dark_frame(self, index, create=False):
        frames = self.doc["darkFrames"]
        if index < len(frames):
            return BackgroundFrame(self, index, frames[index])
        if not create:
            return None
        while len(frames) <= index:
            frames.append({})
        return BackgroundFrame(self, index, frames[index])

    @property
    def random_state(self):
        return self.doc.get("random")

    @random_state.setter
    def random_state(self, state):
        self.doc["random"] = state
