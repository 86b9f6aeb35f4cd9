"""Path normalization shared by the bridge agent (NAS side) and render agent."""
import ntpath
import platform
import posixpath
import socket


def local_hostname() -> str:
    """Return short hostname, stripping FQDN domain suffix."""
    return socket.gethostname().split(".")[0]


def get_source_os() -> str:
    system = platform.system().lower()
    if system == "windows":
        return "windows"
    elif system == "darwin":
        return "darwin"
    else:
        return "linux"


def clean_path(path: str) -> str:
    """Forward slashes, no trailing slash (except root)."""
    p = path.replace("\\", "/")
    p = posixpath.normpath(p) if p else p
    return p


def is_under_boundary(path: str, boundary: str) -> bool:
    """
    True if path is boundary itself or nested below it.
    Component-based: /mnt/nas2 is NOT under /mnt/nas.
    """
    p = clean_path(path)
    b = clean_path(boundary)
    if not p or not b:
        return False
    if b == "/":
        return p.startswith("/")
    return p == b or p.startswith(b + "/")


def canonical_relative_path(abs_path: str, mount_root: str) -> str:
    """
    Canonical catalog path: relative to the mount boundary, forward slashes,
    no leading separator. /mnt/nas/art/dragon.psd -> art/dragon.psd
    """
    p = clean_path(abs_path)
    b = clean_path(mount_root)
    if b != "/" and (p == b or p.startswith(b + "/")):
        p = p[len(b):]
    return p.lstrip("/")


def to_unc_path(relative_path: str, host: str, share: str) -> str:
    """art/dragon.ai -> \\\\host\\share\\art\\dragon.ai"""
    clean_host = host.strip().lstrip("\\/")
    clean_share = share.strip().strip("\\/")
    windows_rel = relative_path.lstrip("/").replace("/", "\\")
    return f"\\\\{clean_host}\\{clean_share}\\{windows_rel}"


def resolve_job_path(
    relative_path: str,
    *,
    nas_host: str = "",
    nas_share: str = "",
    mount_root: str = "",
    source_os: str | None = None,
) -> str:
    """
    Map a canonical relative path to a local filesystem path on the render host.

    Windows hosts with a NAS host/share configured use a UNC path; everything
    else joins the relative path onto mount_root.
    """
    if source_os is None:
        source_os = get_source_os()
    if source_os == "windows" and nas_host and nas_share:
        return to_unc_path(relative_path, nas_host, nas_share)
    if not mount_root:
        raise ValueError("no NAS host/share or mount root configured for render jobs")
    if source_os == "windows":
        return ntpath.join(mount_root, *relative_path.split("/"))
    return posixpath.join(mount_root, relative_path.lstrip("/"))
