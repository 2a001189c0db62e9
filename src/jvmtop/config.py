"""Command-line options, configuration and logging setup."""

import argparse
import logging
from dataclasses import dataclass
from pathlib import Path

from jvmtop.discovery import DEFAULT_JOLOKIA_PORT
from jvmtop.jolokia import DEFAULT_TIMEOUT
from jvmtop.ranking import SortKey

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_FILE = "jvmtop.log"
MIN_DELAY = 0.1


@dataclass
class Config:
    delay: float = 1.0
    iterations: int | None = None  # None runs until quit
    pid: int | None = None
    stat: bool = False
    sort_key: SortKey = SortKey.CPU
    thread_limit: int = 30
    thread_limit_enabled: bool = True
    thread_name_width: int = 65
    jolokia_url: str | None = None
    jolokia_port: int = DEFAULT_JOLOKIA_PORT
    timeout: float = DEFAULT_TIMEOUT
    user: str | None = None
    password: str | None = None
    verbose: bool = False
    log_file: Path | None = None
    sysinfo: bool = False

    @property
    def displayed_thread_limit(self) -> int | None:
        """Thread limit, or None when all threads are displayed."""
        return self.thread_limit if self.thread_limit_enabled else None

    @property
    def batch(self) -> bool:
        """Plain-text output for a fixed number of iterations instead of the TUI."""
        return self.iterations is not None or self.stat


def _delay(value: str) -> float:
    delay = float(value)
    if delay < MIN_DELAY:
        raise argparse.ArgumentTypeError(f"delay cannot be set below {MIN_DELAY}")
    return delay


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="jvmtop", description="java monitoring for the command-line")
    ap.add_argument("pid_arg", nargs="?", type=int, metavar="PID", help="PID to connect to")
    ap.add_argument("-n", "--iteration", type=int, default=None, help="jvmtop will exit after n output iterations")
    ap.add_argument("-d", "--delay", type=_delay, default=1.0, help="delay between each output iteration")
    ap.add_argument("-p", "--pid", type=int, default=None, help="PID to connect to")
    ap.add_argument("--stat", action="store_true", help="start stat view at the specified jvm")
    ap.add_argument("--sort", choices=[key.value for key in SortKey], default=SortKey.CPU.value, help="overview order")
    ap.add_argument("--threadlimit", type=int, default=30, help="sets the number of displayed threads in detail mode")
    ap.add_argument("--disable-threadlimit", action="store_true", help="displays all threads in detail mode")
    ap.add_argument("--threadnamewidth", type=int, default=65, help="sets displayed thread name length in detail mode")
    ap.add_argument("--jolokia-url", default=None, help="jolokia endpoint of the jvm given by --pid")
    ap.add_argument("--jolokia-port", type=int, default=DEFAULT_JOLOKIA_PORT, help="agent port assumed when the command line names none")
    ap.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="HTTP timeout towards the agents (seconds)")
    ap.add_argument("--user", default=None, help="jolokia user")
    ap.add_argument("--password", default=None, help="jolokia password")
    ap.add_argument("--sysinfo", action="store_true", help="outputs diagnostic information and exits")
    ap.add_argument("--verbose", action="store_true", help="verbose mode")
    ap.add_argument("--log-file", default=None, help=f"log file (default {DEFAULT_LOG_FILE} in TUI mode)")
    return ap


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def init_config_from_args(args: argparse.Namespace) -> Config:
    pid = args.pid if args.pid is not None else args.pid_arg
    if args.stat and pid is None:
        raise SystemExit("--stat requires a PID")
    if args.jolokia_url and pid is None:
        raise SystemExit("--jolokia-url requires a PID")
    return Config(
        delay=args.delay,
        iterations=args.iteration,
        pid=pid,
        stat=args.stat,
        sort_key=SortKey(args.sort),
        thread_limit=args.threadlimit,
        thread_limit_enabled=not args.disable_threadlimit,
        thread_name_width=args.threadnamewidth,
        jolokia_url=args.jolokia_url,
        jolokia_port=args.jolokia_port,
        timeout=args.timeout,
        user=args.user,
        password=args.password,
        verbose=args.verbose,
        log_file=Path(args.log_file) if args.log_file else None,
        sysinfo=args.sysinfo,
    )


def setup_logging(cfg: Config) -> None:
    """
    Configure the root logger.

    The TUI owns the terminal, so outside batch mode records go to a file.
    """
    level = logging.DEBUG if cfg.verbose else logging.WARNING
    log_file = cfg.log_file
    if log_file is None and not cfg.batch:
        log_file = Path(DEFAULT_LOG_FILE)

    handlers: list[logging.Handler]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(log_file, delay=True)]
    else:
        handlers = [logging.StreamHandler()]
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    if cfg.verbose:
        logging.getLogger(__name__).debug("Verbosity mode.")
