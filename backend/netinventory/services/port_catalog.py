"""Catalog of well-known TCP ports, their coarse service labels and the default scan lists."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class WellKnownPort:
    port: int
    label: str
    web: bool = False
    tls: bool = False


WELL_KNOWN_PORTS: List[WellKnownPort] = [
    WellKnownPort(7, "Echo"),
    WellKnownPort(9, "Discard"),
    WellKnownPort(13, "Daytime"),
    WellKnownPort(21, "FTP"),
    WellKnownPort(22, "SSH"),
    WellKnownPort(23, "Telnet"),
    WellKnownPort(25, "SMTP"),
    WellKnownPort(37, "Time"),
    WellKnownPort(53, "DNS"),
    WellKnownPort(79, "Finger"),
    WellKnownPort(80, "HTTP", web=True),
    WellKnownPort(81, "HTTP Alt", web=True),
    WellKnownPort(88, "Kerberos"),
    WellKnownPort(110, "POP3"),
    WellKnownPort(111, "RPC"),
    WellKnownPort(113, "Ident"),
    WellKnownPort(119, "NNTP"),
    WellKnownPort(135, "RPC Endpoint Mapper"),
    WellKnownPort(139, "NetBIOS"),
    WellKnownPort(143, "IMAP"),
    WellKnownPort(179, "BGP"),
    WellKnownPort(389, "LDAP"),
    WellKnownPort(443, "HTTPS", web=True, tls=True),
    WellKnownPort(445, "SMB"),
    WellKnownPort(465, "SMTPS"),
    WellKnownPort(514, "Syslog"),
    WellKnownPort(515, "LPD"),
    WellKnownPort(587, "SMTP (Submission)"),
    WellKnownPort(631, "IPP"),
    WellKnownPort(993, "IMAPS"),
    WellKnownPort(995, "POP3S"),
    WellKnownPort(1433, "SQL Server"),
    WellKnownPort(1723, "PPTP"),
    WellKnownPort(3000, "Node.js/Development"),
    WellKnownPort(3306, "MySQL"),
    WellKnownPort(3389, "RDP"),
    WellKnownPort(5000, "UPnP/Development"),
    WellKnownPort(5432, "PostgreSQL"),
    WellKnownPort(5900, "VNC"),
    WellKnownPort(6379, "Redis"),
    WellKnownPort(8000, "HTTP Alt", web=True),
    WellKnownPort(8080, "HTTP Proxy", web=True),
    WellKnownPort(8443, "HTTPS Alt", web=True, tls=True),
    WellKnownPort(8888, "HTTP Alt", web=True),
    WellKnownPort(9000, "Development"),
    WellKnownPort(9200, "Elasticsearch"),
    WellKnownPort(27017, "MongoDB"),
]

SERVICE_LABELS: Dict[int, str] = {entry.port: entry.label for entry in WELL_KNOWN_PORTS}
WEB_PORTS: Dict[int, WellKnownPort] = {entry.port: entry for entry in WELL_KNOWN_PORTS if entry.web}

UNKNOWN_LABEL = "Unknown"

# Quick scans
COMMON_PORTS: List[int] = [
    21, 22, 23, 25, 53, 80, 110, 135, 139, 143, 443, 445, 993, 995,
    1723, 3306, 3389, 5432, 5900, 6379, 8080, 8443, 9200, 27017,
]

# Default for range and host scans
EXTENDED_PORTS: List[int] = [
    7, 9, 13, 21, 22, 23, 25, 26, 37, 53, 79, 80, 81, 88, 106, 110, 111,
    113, 119, 135, 139, 143, 144, 179, 199, 389, 427, 443, 444, 445, 465,
    513, 514, 515, 543, 544, 548, 554, 587, 631, 646, 873, 990, 993, 995,
    1025, 1026, 1027, 1028, 1029, 1110, 1433, 1720, 1723, 1755, 1900, 2000,
    2001, 2049, 2121, 2717, 3000, 3128, 3306, 3389, 3986, 4899, 5000, 5009,
    5051, 5060, 5101, 5190, 5357, 5432, 5631, 5666, 5800, 5900, 6000, 6001,
    6646, 7000, 7070, 7937, 7938, 8000, 8002, 8008, 8010, 8080, 8443, 8888,
    9000, 9001, 9090, 9100, 9102, 9200, 9999, 10000, 32768,
    49152, 49153, 49154, 49155, 49156, 49157,
]

FULL_PORT_RANGE = range(1, 65536)

# Banner keyword -> refined label, checked in order
BANNER_KEYWORDS: List[tuple] = [
    ("nginx", "Nginx"),
    ("apache", "Apache HTTP Server"),
    ("microsoft-iis", "Microsoft IIS"),
    ("lighttpd", "Lighttpd"),
    ("mysql", "MySQL"),
    ("postgresql", "PostgreSQL"),
    ("mongodb", "MongoDB"),
    ("redis", "Redis"),
    ("openssh", "OpenSSH"),
    ("filezilla", "FileZilla FTP"),
    ("proftpd", "ProFTPD"),
    ("vsftpd", "vsftpd"),
    ("postfix", "Postfix SMTP"),
    ("sendmail", "Sendmail SMTP"),
    ("dovecot", "Dovecot"),
    ("express", "Express.js"),
    ("flask", "Flask"),
    ("django", "Django"),
]


def label_for_port(port: int) -> str:
    return SERVICE_LABELS.get(port, UNKNOWN_LABEL)


def refine_label_from_banner(label: str, banner: str | None) -> str:
    """Swap the port-table label for a product name when the banner names one."""
    if not banner:
        return label
    lowered = banner.lower()
    for keyword, refined in BANNER_KEYWORDS:
        if keyword in lowered:
            return refined
    return label
