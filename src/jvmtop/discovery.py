"""Discovery of local JVMs and the registry of tracked instances."""

import logging
import os
import re
import threading
from collections.abc import Mapping
from typing import Protocol

import psutil

from jvmtop.errors import DiscoveryError
from jvmtop.instance import InstanceMonitor
from jvmtop.models import InstanceDescriptor, InstanceIdentity
from jvmtop.session import SessionRegistry

logger = logging.getLogger(__name__)

JAVA_EXECUTABLES = {"java", "java.exe", "javaw", "javaw.exe"}

DEFAULT_JOLOKIA_PORT = 8778

# Options whose value is the following argument
_OPTIONS_WITH_VALUE = {"-cp", "-classpath", "--class-path", "-p", "--module-path", "--add-modules"}

_JOLOKIA_AGENT_RE = re.compile(r"-javaagent:(?P<jar>[^=]*jolokia[^=]*)(?:=(?P<options>.*))?", re.IGNORECASE)


class DiscoveryProvider(Protocol):
    """Source of the JVMs currently visible to the monitor."""

    def list_visible_instances(self) -> dict[InstanceIdentity, InstanceDescriptor]:
        """
        Return every visible JVM keyed by identity.

        Raises:
            DiscoveryError: if the provider itself is unusable.
        """
        ...


def is_java_process(name: str | None, cmdline: list[str]) -> bool:
    """Check whether a process looks like a JVM launched by the java launcher."""
    if name and name.lower() in JAVA_EXECUTABLES:
        return True
    return bool(cmdline) and os.path.basename(cmdline[0]).lower() in JAVA_EXECUTABLES


def display_name_from_cmdline(cmdline: list[str]) -> str:
    """
    Derive the main class (or jar / module) and its arguments from a java command line.

    >>> display_name_from_cmdline(["java", "-Xmx1g", "-cp", "app.jar", "com.example.Main", "--port", "80"])
    'com.example.Main --port 80'
    """
    args = cmdline[1:]
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("-jar", "-m", "--module") and i + 1 < len(args):
            return " ".join(args[i + 1 :])
        if arg in _OPTIONS_WITH_VALUE:
            i += 2
            continue
        if arg.startswith("-"):
            i += 1
            continue
        return " ".join(args[i:])
    return ""


def jolokia_endpoint(cmdline: list[str], default_port: int = DEFAULT_JOLOKIA_PORT) -> str | None:
    """Management URL of a Jolokia JVM agent configured on the command line, if any."""
    for arg in cmdline:
        match = _JOLOKIA_AGENT_RE.fullmatch(arg)
        if not match:
            continue
        options: dict[str, str] = {}
        for item in (match.group("options") or "").split(","):
            key, sep, value = item.partition("=")
            if sep:
                options[key.strip()] = value.strip()
        host = options.get("host", "localhost")
        if host in ("0.0.0.0", "*", "::"):
            host = "localhost"
        port = options.get("port", str(default_port))
        protocol = options.get("protocol", "http")
        context = "/" + options.get("agentContext", "/jolokia").strip("/")
        return f"{protocol}://{host}:{port}{context}/"
    return None


class LocalDiscovery:
    """
    Finds JVMs running on this machine using psutil.

    A JVM is attachable when its command line loads a Jolokia agent, whose
    options give the management endpoint.
    """

    def __init__(
        self,
        default_port: int = DEFAULT_JOLOKIA_PORT,
        user: str | None = None,
        password: str | None = None,
    ) -> None:
        self._default_port = default_port
        self._user = user
        self._password = password

    def list_visible_instances(self) -> dict[InstanceIdentity, InstanceDescriptor]:
        instances: dict[InstanceIdentity, InstanceDescriptor] = {}
        try:
            for proc in psutil.process_iter(attrs=["pid", "name", "cmdline"]):
                try:
                    info = proc.info
                    cmdline = info.get("cmdline") or []
                    if not is_java_process(info.get("name"), cmdline):
                        continue
                    instances[info["pid"]] = self._describe(info["pid"], info.get("name") or "", cmdline)
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    # Process vanished or is not ours to inspect
                    continue
        except psutil.Error as exc:
            raise DiscoveryError(f"cannot enumerate processes: {exc}") from exc
        return instances

    def _describe(self, pid: int, name: str, cmdline: list[str]) -> InstanceDescriptor:
        endpoint = jolokia_endpoint(cmdline, self._default_port)
        return InstanceDescriptor(
            pid=pid,
            display_name=display_name_from_cmdline(cmdline) or name,
            attachable=endpoint is not None,
            endpoint=endpoint,
            user=self._user,
            password=self._password,
        )


class StaticDiscovery:
    """Serves a fixed set of JVMs, e.g. one given explicitly on the command line."""

    def __init__(self, descriptors: list[InstanceDescriptor]) -> None:
        self._descriptors = {descriptor.pid: descriptor for descriptor in descriptors}

    def list_visible_instances(self) -> dict[InstanceIdentity, InstanceDescriptor]:
        return dict(self._descriptors)


class InstanceRegistry:
    """
    The JVMs tracked by the polling loop.

    New identities are attached as they are discovered. Identities that
    disappear stay tracked; their updates fail until they are detached.
    """

    def __init__(self, sessions: SessionRegistry) -> None:
        self.sessions = sessions
        self._previous: dict[InstanceIdentity, InstanceDescriptor] = {}
        self._instances: list[InstanceMonitor] = []
        self._tracked: set[InstanceIdentity] = set()
        self._lock = threading.Lock()

    @property
    def instances(self) -> list[InstanceMonitor]:
        """Tracked instances in the order they were discovered."""
        with self._lock:
            return list(self._instances)

    def get(self, identity: InstanceIdentity) -> InstanceMonitor | None:
        with self._lock:
            for instance in self._instances:
                if instance.identity == identity:
                    return instance
        return None

    def merge_discovered(
        self, visible: Mapping[InstanceIdentity, InstanceDescriptor]
    ) -> list[InstanceIdentity]:
        """
        Track every identity in ``visible`` that was not in the previous result.

        Returns the newly added identities in discovery order.
        """
        added: list[InstanceIdentity] = []
        for identity, descriptor in visible.items():
            if identity in self._previous or identity in self._tracked:
                continue
            instance = InstanceMonitor.attach(self.sessions, descriptor)
            with self._lock:
                self._instances.append(instance)
                self._tracked.add(identity)
            added.append(identity)
            logger.debug("tracking PID=%d (%s) as %s", identity, descriptor.display_name, instance.state.value)
        self._previous = dict(visible)
        return added

    def close(self) -> None:
        self.sessions.close_all()
