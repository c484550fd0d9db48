class ProctorCamError(Exception):
    pass


class ConfigError(ProctorCamError, ValueError):
    pass


class DeviceAccessError(ProctorCamError):
    """Camera could not be opened or was denied."""
