import re

from engine.errors import InvalidTargetError

SHELL_METACHARS = re.compile(r"[;&|`$(){}\[\]\\]")
HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9.-]+$")
IPV4_RE = re.compile(r"^(?:[0-9]{1,3}\.){3}[0-9]{1,3}$")
URL_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)

NMAP_SCAN_TYPES = ("-sT", "-sS", "-sA", "-sU")


def _clean(value: str) -> str:
    return re.sub(r"\s+", "", SHELL_METACHARS.sub("", value or "")).strip()


def sanitize_target_host(target: str) -> str:
    """
    Strip shell metacharacters and whitespace, then require a hostname or IPv4 address.
    """
    cleaned = _clean(target)
    if not cleaned or not (HOSTNAME_RE.match(cleaned) or IPV4_RE.match(cleaned)):
        raise InvalidTargetError("Invalid target format. Use a hostname or IPv4 address.")
    return cleaned


def sanitize_target_url(target: str) -> str:
    """
    Accept an http(s) URL as is; bare hostnames and addresses get an http:// scheme.
    """
    cleaned = _clean(target)
    if URL_RE.match(cleaned):
        return cleaned
    if cleaned and (HOSTNAME_RE.match(cleaned) or IPV4_RE.match(cleaned)):
        return f"http://{cleaned}"
    raise InvalidTargetError("Invalid target format. Use a URL or hostname.")


def sanitize_flags(flags) -> list:
    cleaned = []
    for flag in flags or []:
        if not isinstance(flag, str):
            continue
        flag = SHELL_METACHARS.sub("", flag).strip()
        if 0 < len(flag) < 100:
            cleaned.append(flag)
    return cleaned


def normalize_nmap_flags(flags, base_args=()) -> list:
    """
    Keep nmap runnable in an unprivileged container: force a TCP connect scan
    and skip ICMP host discovery unless the caller or the base invocation chose otherwise.
    """
    result = list(flags)
    lowered = {f.lower() for f in list(base_args) + result}
    if not any(s.lower() in lowered for s in NMAP_SCAN_TYPES):
        result.insert(0, "-sT")
    if "-pn" not in lowered:
        result.insert(0, "-Pn")
    return result


def format_uptime(seconds: float) -> str:
    return f"{int(seconds)}s"
