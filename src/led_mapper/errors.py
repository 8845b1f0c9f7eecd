"""Exceptions raised by the photographer and its collaborators."""


class PhotographerError(Exception):
    """Base class for errors that stop a photography run."""


class DeviceError(PhotographerError):
    """The camera or the lighting controller could not be used."""


class FadecandyError(DeviceError):
    """fcserver refused a request, sent garbage, or didn't answer in time."""


class CameraError(DeviceError):
    """No camera, or gphoto2 failed to capture."""


class DerivationError(PhotographerError):
    """An image could not be decoded or reduced."""
