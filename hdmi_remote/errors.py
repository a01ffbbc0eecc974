class RemoteError(Exception):
    """Base class for errors raised by the remote."""


class ConfigError(RemoteError):
    """A channel name that cannot be served with the current configuration."""

    reason = "config_error"

    def __init__(self, name: str, message: str):
        super().__init__(message)
        self.name = name

    def to_dict(self) -> dict:
        return {"ok": False, "reason": self.reason, "error": str(self)}


def _env_suffix(name: str) -> str:
    return "".join(ch for ch in str(name).upper() if ch.isalnum())


class UnknownChannel(ConfigError):
    reason = "unknown_channel"

    def __init__(self, name: str):
        suffix = _env_suffix(name)
        super().__init__(name, f"Unknown channel {name}. Set CHAN_{suffix} or TS_{suffix} in env.")


class MissingTsSource(ConfigError):
    reason = "no_ts_source"

    def __init__(self, name: str):
        super().__init__(
            name,
            f"No TS source for {name}. Set TS_{_env_suffix(name)}=http://192.168.0.168/0.ts in env.",
        )


class MissingPlayerUrl(ConfigError):
    reason = "no_player_url"

    def __init__(self, name: str):
        super().__init__(name, f"Unknown preset {name}. Set CHAN_{_env_suffix(name)} in env.")


class SessionError(RemoteError):
    """The browser could not be launched or went away."""


class NavigationError(RemoteError):
    def __init__(self, url: str, cause: BaseException):
        super().__init__(f"navigation to {url} failed: {cause}")
        self.url = url
        self.cause = cause


class InteractionError(RemoteError):
    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


class UpstreamStreamError(RemoteError):
    def __init__(self, url: str, cause: BaseException):
        super().__init__(f"upstream {url} failed: {cause}")
        self.url = url
        self.cause = cause
