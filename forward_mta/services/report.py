"""
Diagnostic report for the plain-text part of the outer message.

Tells the operator which host invoked sendmail, with what arguments and
as which user. Only invocation arguments and environment values go in
here; nothing from the forwarded message itself.

Public API:
  build_report(hostname, args, config_path, identity=None, host=None) -> str
"""

import grp
import json
import logging
import os
import platform
import pwd
import socket
import stat
from dataclasses import dataclass
from typing import Optional

from forward_mta.services.invocation import InvocationArgs

logger = logging.getLogger(__name__)

PACKAGE_NAME = "forward-as-attachment-mta"


def _quoted(text: str) -> str:
    """Double-quoted, with quotes, backslashes and control characters escaped."""
    return json.dumps(text, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Environment lookups
# ---------------------------------------------------------------------------

def current_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        logger.debug("gethostname failed", exc_info=True)
        return "???"


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return ""


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return ""


@dataclass(frozen=True)
class ProcessIdentity:
    uid: int
    gid: int
    euid: int
    egid: int
    username: str = ""
    groupname: str = ""
    effective_username: str = ""
    effective_groupname: str = ""

    @classmethod
    def current(cls) -> "ProcessIdentity":
        uid, gid = os.getuid(), os.getgid()
        euid, egid = os.geteuid(), os.getegid()
        return cls(
            uid=uid,
            gid=gid,
            euid=euid,
            egid=egid,
            username=_user_name(uid),
            groupname=_group_name(gid),
            effective_username=_user_name(euid),
            effective_groupname=_group_name(egid),
        )


def _distro() -> str:
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        return platform.platform()
    return release.get("PRETTY_NAME") or release.get("NAME") or platform.platform()


@dataclass(frozen=True)
class HostIdentity:
    hostname: str
    device_name: str
    distro: str
    platform: str

    @classmethod
    def current(cls) -> "HostIdentity":
        return cls(
            hostname=current_hostname(),
            device_name=platform.node(),
            distro=_distro(),
            platform=platform.system(),
        )


# ---------------------------------------------------------------------------
# Config permission check
# ---------------------------------------------------------------------------

def check_config_permissions(path: str) -> Optional[str]:
    """
    Return a WARNING line if the config file is accessible beyond its owner.

    The file holds SMTP credentials, so any group/other bit is too lax.
    Returns None when permissions are fine.
    """
    try:
        mode = os.stat(path).st_mode
    except OSError as e:
        return (
            "WARNING: could not determine permissions of the config file, "
            f"they may or may not be too lax: {e}"
        )
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        # filemode() leads with the file type character
        perms = stat.filemode(mode)[1:]
        return (
            "WARNING: the config file contains SMTP credentials and has "
            f"too-lax permissions: {perms}"
        )
    return None


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_report(
    hostname: str,
    args: InvocationArgs,
    config_path: Optional[str],
    identity: Optional[ProcessIdentity] = None,
    host: Optional[HostIdentity] = None,
) -> str:
    """
    Render the report text.

    ``identity`` and ``host`` default to the running process and machine.
    Pass config_path=None to skip the permission check.
    """
    if identity is None:
        identity = ProcessIdentity.current()
    if host is None:
        host = HostIdentity.current()

    lines = [
        f"A process on host {_quoted(hostname)} invoked the sendmail binary.",
        f"On that host, the sendmail binary is provided by the {PACKAGE_NAME} package.",
    ]
    if config_path is not None:
        warning = check_config_permissions(config_path)
        if warning:
            lines.append(warning)
    lines += [
        "The original message is attached inline to this wrapper message.",
        "",
        f"Invocation args: {args.display()}",
        "",
        f"uid:{identity.uid} gid:{identity.gid} euid:{identity.euid} egid:{identity.egid}",
        f"username: {identity.username}",
        f"groupname: {identity.groupname}",
        f"effective username: {identity.effective_username}",
        f"effective groupname: {identity.effective_groupname}",
        "",
        f"hostname: {host.hostname}",
        f"device name: {host.device_name}",
        f"distro: {host.distro}",
        f"platform: {host.platform}",
        "",
    ]
    return "\n".join(lines) + "\n"
