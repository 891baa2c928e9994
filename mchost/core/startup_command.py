"""Startup command value object and JVM flag validation."""

from dataclasses import dataclass, replace
import re

from mchost.core.errors import InvalidStartupFlags

MAX_STARTUP_FLAGS_LENGTH = 600
_DISALLOWED_CHARS_RE = re.compile(r"[;&|<>`$]")
_JAR_TOKEN_RE = re.compile(r"\s-jar\b", re.IGNORECASE)


def validate_startup_flags(raw_flags):
    """Return trimmed flags or raise ``InvalidStartupFlags``.

    This is a string-pattern blocklist, not a flag parser.
    """
    flags = raw_flags.strip() if isinstance(raw_flags, str) else ""
    if not flags:
        return ""
    if len(flags) > MAX_STARTUP_FLAGS_LENGTH:
        raise InvalidStartupFlags("Flags are too long.")
    if _DISALLOWED_CHARS_RE.search(flags) or "\r" in flags or "\n" in flags:
        raise InvalidStartupFlags("Flags contain unsupported characters like shell separators.")
    if re.search(r"-jar\b", flags, re.IGNORECASE) or re.search(r"\bserver\.jar\b", flags, re.IGNORECASE):
        raise InvalidStartupFlags("Flags cannot modify the server jar configuration.")
    if re.search(r"-Xm[xs]", flags, re.IGNORECASE):
        raise InvalidStartupFlags("Flags cannot change the allocated memory.")
    if re.match(r"java\b", flags, re.IGNORECASE):
        raise InvalidStartupFlags("Flags cannot override the java executable.")
    return flags


def compose_startup_command(base_command="", flags=""):
    """Splice ``flags`` right before the ``-jar`` token of ``base_command``."""
    base = str(base_command or "").strip()
    extra = str(flags or "").strip()
    if not extra:
        return base
    match = _JAR_TOKEN_RE.search(base)
    if match is None:
        return f"{base} {extra}".strip()
    prefix = base[:match.start()].rstrip()
    suffix = base[match.start():].lstrip()
    return f"{prefix} {extra} {suffix}".strip()


def build_base_command(memory_gb, jar_name="server.jar"):
    """Return the immutable base launch command for a memory allocation."""
    memory = int(memory_gb)
    return f"java -Xmx{memory}G -Xms{memory}G -jar {jar_name} nogui"


@dataclass(frozen=True)
class StartupCommand:
    """Base launch command plus validated extra JVM flags."""
    base_command: str
    flags: str = ""

    @classmethod
    def create(cls, base_command, flags=""):
        return cls(str(base_command or "").strip(), validate_startup_flags(flags))

    @property
    def effective_command(self):
        return compose_startup_command(self.base_command, self.flags)

    def with_flags(self, flags):
        return replace(self, flags=validate_startup_flags(flags))

    def describe(self):
        """Payload shape used by the startup-flags endpoints."""
        return {
            "baseCommand": self.base_command,
            "startupFlags": self.flags,
            "effectiveCommand": self.effective_command,
            "allowCustomFlags": True,
            "requiresRestart": True,
        }
