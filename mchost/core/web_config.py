"""``mchost.env`` reader: KEY=VALUE lines, environment overrides, typed getters."""

import os
from pathlib import Path

_BOOL_WORDS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False,
}


def parse_env_lines(lines):
    """Return ``{key: value}`` from dotenv-style lines; comments and junk are skipped."""
    parsed = {}
    for raw in lines:
        key, sep, value = raw.strip().partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] in "'\"" and value[-1] == value[0]:
            value = value[1:-1]
        parsed[key] = value
    return parsed


class WebConfig:
    """Settings file plus process environment; a non-blank environment value wins."""

    def __init__(self, config_path, base_dir, environ=None):
        self.config_path = Path(config_path)
        self.base_dir = Path(base_dir)
        self.environ = os.environ if environ is None else environ
        try:
            self.values = parse_env_lines(self.config_path.read_text(encoding="utf-8").splitlines())
        except OSError:
            self.values = {}

    def _lookup(self, name):
        """Stripped setting text, or ``None`` when unset or blank."""
        for source in (self.environ, self.values):
            value = source.get(name)
            if value is not None and str(value).strip():
                return str(value).strip()
        return None

    def _number(self, name, default, cast, minimum):
        text = self._lookup(name)
        if text is None:
            return default
        try:
            value = cast(text)
        except ValueError:
            return default
        return value if minimum is None else max(minimum, value)

    def get_str(self, name, default):
        text = self._lookup(name)
        return default if text is None else text

    def get_int(self, name, default, minimum=None):
        return self._number(name, default, int, minimum)

    def get_float(self, name, default, minimum=None):
        return self._number(name, default, float, minimum)

    def get_bool(self, name, default):
        """``1/true/yes/on`` or ``0/false/no/off``; anything else keeps ``default``."""
        text = self._lookup(name)
        return _BOOL_WORDS.get(text.lower(), default) if text is not None else default

    def get_path(self, name, default):
        """Path setting; relative values are taken from ``base_dir``."""
        text = self._lookup(name)
        if text is None:
            return Path(default)
        path = Path(text)
        return path if path.is_absolute() else self.base_dir / path
