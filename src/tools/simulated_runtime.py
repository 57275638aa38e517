# src/tools/simulated_runtime.py
"""
SimulatedRuntime: degraded execution mode that fabricates clearly labeled tool
output without touching a container engine.
"""
import logging
import threading
import uuid
from typing import Iterator

from tools.base import STDOUT, ContainerHandle, ContainerRuntime, ContainerSpec, OutputChunk

LABEL = "[SIMULATION]"
KILLED_EXIT_CODE = 137

CANNED_OUTPUT = {
    "nmap": [
        "Starting Nmap 7.94 ( https://nmap.org )",
        "Nmap scan report for {target}",
        "Host is up (0.023s latency).",
        "PORT    STATE SERVICE VERSION",
        "22/tcp  open  ssh     OpenSSH 8.9p1 Ubuntu 3ubuntu0.4",
        "80/tcp  open  http    nginx 1.18.0",
        "443/tcp open  ssl/http nginx 1.18.0",
        "Service detection performed.",
        "Nmap done: 1 IP address (1 host up) scanned in 12.41 seconds",
    ],
    "nikto": [
        "- Nikto v2.5.0",
        "+ Target Host: {target}",
        "+ Server: nginx/1.18.0",
        "+ The anti-clickjacking X-Frame-Options header is not present.",
        "+ The X-Content-Type-Options header is not set.",
        "+ No CGI Directories found (use '-C all' to force check all possible dirs)",
        "+ 8102 requests: 0 error(s) and 2 item(s) reported on remote host",
    ],
    "sqlmap": [
        "[*] starting sqlmap",
        "[INFO] testing connection to the target URL {target}",
        "[INFO] testing if the target URL content is stable",
        "[INFO] heuristic (basic) test shows that GET parameter 'id' might not be injectable",
        "[WARNING] GET parameter 'id' does not seem to be injectable",
        "[*] ending sqlmap",
    ],
    "gobuster": [
        "Gobuster v3.6",
        "[+] Url: {target}",
        "[+] Threads: 10",
        "/admin                (Status: 301) [Size: 178]",
        "/images               (Status: 301) [Size: 178]",
        "/robots.txt           (Status: 200) [Size: 64]",
        "Finished",
    ],
    "whatweb": [
        "{target} [200 OK] Country[RESERVED][ZZ], HTTPServer[nginx/1.18.0], nginx[1.18.0], Title[Welcome]",
    ],
    "wpscan": [
        "WordPress Security Scanner by the WPScan Team",
        "[+] URL: {target}",
        "[+] Headers: Server: nginx/1.18.0",
        "[i] The WordPress version could not be detected.",
        "[+] Finished",
    ],
}


class SimulatedContainer(ContainerHandle):
    def __init__(self, spec: ContainerSpec):
        self._id = f"sim-{uuid.uuid4().hex[:12]}"
        self.spec = spec
        self.started = threading.Event()
        self.stopped = threading.Event()
        self.finished = threading.Event()

    @property
    def id(self) -> str:
        return self._id


class SimulatedRuntime(ContainerRuntime):
    mode = "degraded"

    def __init__(self, line_delay: float = 0.2):
        self.line_delay = line_delay

    def ping(self) -> bool:
        return True

    def image_present(self, image: str) -> bool:
        return True

    def ensure_image(self, image: str) -> None:
        logging.info(f"{LABEL} Skipping image check for {image}")

    def create(self, spec: ContainerSpec) -> SimulatedContainer:
        return SimulatedContainer(spec)

    def _lines(self, spec: ContainerSpec):
        argv = list(spec.command)
        tool = argv[0] if argv else "unknown"
        target = next((a for a in reversed(argv[1:]) if not a.startswith("-")), "unknown-target")
        lines = [f"{LABEL} Simulated execution, no container engine was used: {' '.join(argv)}"]
        lines += [line.format(target=target) for line in CANNED_OUTPUT.get(tool, ["{target}: no findings"])]
        return [f"{LABEL} {line}\n" for line in lines]

    def attach(self, handle: SimulatedContainer) -> Iterator[OutputChunk]:
        return self._stream(handle)

    def _stream(self, handle: SimulatedContainer) -> Iterator[OutputChunk]:
        handle.started.wait()
        for line in self._lines(handle.spec):
            if handle.stopped.wait(self.line_delay):
                return
            yield OutputChunk(STDOUT, line)
        handle.finished.set()

    def start(self, handle: SimulatedContainer) -> None:
        handle.started.set()

    def wait(self, handle: SimulatedContainer) -> int:
        while not handle.finished.wait(0.05):
            if handle.stopped.is_set():
                return KILLED_EXIT_CODE
        return 0

    def stop(self, handle: SimulatedContainer, grace_seconds: int = 0) -> None:
        handle.stopped.set()
        handle.started.set()

    def remove(self, handle: SimulatedContainer, force: bool = True) -> None:
        handle.stopped.set()
        handle.started.set()
