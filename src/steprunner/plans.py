"""Provisioning plans for the Ubuntu golden images.

Each plan is an ordered list of ``Step`` objects. Unguarded commands are
fatal; commands the image build tolerates failing are marked ignorable, and
steps that only apply when a file, user or binary is present carry a
condition.

Destructive, operator-chosen steps are not part of any plan. Add them to the
list returned here when an image needs them.
"""

import logging
import pwd
import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List

from .actions import CallableAction, CommandAction, FirstOf
from .decorators import ignorable, step
from .download import DownloadAction
from .exceptions import UnknownPlanError
from .runner import Step

logger = logging.getLogger(__name__)

PACKER_USER = "superuser"
SSHD_CONFIG = Path("/etc/ssh/sshd_config")

CLOUD_SUDO_OVERRIDE = """\
# Override default sudo behaviour from cloud-init:
# require a password for sudo instead of NOPASSWD.
system_info:
  default_user:
    sudo: "ALL=(ALL) ALL"
"""

MOZILLA_PIN = """\
Package: firefox
Pin: origin packages.mozilla.org
Pin-Priority: 1001

Package: firefox
Pin: release o=Ubuntu
Pin-Priority: -1
"""

GNOME_DEFAULTS = """\
[org/gnome/desktop/interface]
color-scheme='prefer-dark'
enable-animations=false

[org/gnome/shell]
favorite-apps=['firefox.desktop', 'org.gnome.Nautilus.desktop', 'org.gnome.Terminal.desktop', 'org.gnome.Software.desktop']
"""

DCONF_PROFILE = """\
user-db:user
system-db:local
"""

ARCHIVE_TYPES = (
    "application/zip",
    "application/x-7z-compressed",
    "application/vnd.rar",
    "application/x-rar",
    "application/x-compressed-tar",
    "application/x-bzip-compressed-tar",
    "application/x-xz-compressed-tar",
)

VIDEO_TYPES = (
    "video/mp4",
    "video/x-msvideo",
    "video/x-matroska",
    "video/webm",
    "video/quicktime",
    "video/mpeg",
    "video/x-flv",
    "video/x-ms-wmv",
    "video/ogg",
)

LANGUAGE_PACKAGES = (
    "hunspell-nl",
    "hunspell-en-za",
    "hunspell-en-ca",
    "hunspell-en-au",
    "hunspell-en-gb",
    "gnome-user-docs-nl",
    "wdutch",
    "language-pack-gnome-nl",
    "language-pack-nl",
)

FLATPAK_APPS = {
    "HandBrake": "fr.handbrake.ghb",
    "VLC": "org.videolan.VLC",
    "Flatseal": "com.github.tchx84.Flatseal",
}

VPN_CONFIG_URL = "https://configs.ipvanish.com/openvpn/v2.6.0-0/configs.zip"
VPN_CONFIG_ZIP = Path("/tmp/configs.zip")
VPN_CONFIG_DIR = Path("/opt/config")


def mime_defaults() -> str:
    lines = ["[Default Applications]", "# Archives"]
    lines += [f"{mime}=xarchiver.desktop;" for mime in ARCHIVE_TYPES]
    lines += ["", "# Video"]
    lines += [f"{mime}=org.videolan.VLC.desktop;" for mime in VIDEO_TYPES]
    return "\n".join(lines) + "\n"


def user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def exists(path: Path) -> Callable[[], bool]:
    return lambda: Path(path).exists()


def installed(binary: str) -> Callable[[], bool]:
    return lambda: shutil.which(binary) is not None


def package_missing(package: str) -> Callable[[], bool]:
    def check() -> bool:
        try:
            result = subprocess.run(["dpkg", "-s", package], capture_output=True)
        except FileNotFoundError:
            return True
        return result.returncode != 0

    return check


def snap_seeding() -> bool:
    try:
        result = subprocess.run(["snap", "changes"], capture_output=True, text=True)
    except FileNotFoundError:
        return False
    return re.search(r"Doing.*Seed", result.stdout, re.IGNORECASE) is not None


def write_file(path: Path, content: str) -> str:
    path = Path(path)
    path.write_text(content, encoding="utf-8")
    return f"Wrote {len(content)} bytes to {path}"


def set_sshd_option(path: Path, key: str, value: str) -> str:
    """Set ``key value`` in an sshd_config, uncommenting or appending as needed."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    pattern = re.compile(rf"^#?{re.escape(key)}[ \t].*$", re.MULTILINE)
    line = f"{key} {value}"
    if pattern.search(text):
        text = pattern.sub(line, text)
    else:
        if text and not text.endswith("\n"):
            text += "\n"
        text += line + "\n"
    path.write_text(text, encoding="utf-8")
    return f"{path}: {line}"


@step("Clear root shell history")
@ignorable
def clear_root_history(path: Path = Path("/root/.bash_history")) -> str:
    path.write_text("")
    return f"Truncated {path}"


def template_cleanup_plan(packer_user: str = PACKER_USER, sshd_config: Path = SSHD_CONFIG) -> List[Step]:
    """Generalize an Ubuntu server VM before it is converted to a template."""
    home = Path("/home") / packer_user
    has_sshd = exists(sshd_config)

    def has_user() -> bool:
        return user_exists(packer_user)

    return [
        Step.command("Clean cloud-init state", "cloud-init", "clean", "--logs",
                     ignorable=True, condition=installed("cloud-init")),
        Step.command("Truncate machine-id", "truncate", "-s0", "/etc/machine-id", ignorable=True),
        Step.command("Remove dbus machine-id", "rm", "-f", "/var/lib/dbus/machine-id", ignorable=True),
        Step.command("Link dbus machine-id", "ln", "-s", "/etc/machine-id", "/var/lib/dbus/machine-id",
                     ignorable=True),
        Step("Reset /etc/hostname", CallableAction(write_file, Path("/etc/hostname"), "localhost\n")),
        Step.command("Set hostname to localhost", "hostnamectl", "set-hostname", "localhost", ignorable=True),
        Step("Restrict root SSH login to keys",
             CallableAction(set_sshd_option, sshd_config, "PermitRootLogin", "prohibit-password"),
             condition=has_sshd),
        Step("Disable SSH password authentication",
             CallableAction(set_sshd_option, sshd_config, "PasswordAuthentication", "no"),
             condition=has_sshd),
        Step("Restart SSH daemon",
             FirstOf(CommandAction("systemctl", "restart", "ssh"), CommandAction("systemctl", "restart", "sshd")),
             ignorable=True, condition=has_sshd),
        Step.command(f"Lock user {packer_user}", "passwd", "-l", packer_user,
                     ignorable=True, condition=has_user),
        Step.command(f"Remove SSH keys of {packer_user}", "rm", "-f", str(home / ".ssh" / "authorized_keys"),
                     ignorable=True, condition=lambda: has_user() and (home / ".ssh").is_dir()),
        Step.from_function(clear_root_history),
        Step.command(f"Clear shell history of {packer_user}", "truncate", "-s0", str(home / ".bash_history"),
                     ignorable=True, condition=lambda: has_user() and (home / ".bash_history").is_file()),
        Step.command("Remove packer sudoers override", "rm", "-f", "/etc/sudoers.d/90-packer",
                     ignorable=True, condition=exists(Path("/etc/sudoers.d/90-packer"))),
        Step.command("Create cloud-init config directory", "mkdir", "-p", "/etc/cloud/cloud.cfg.d"),
        Step("Require sudo password via cloud-init",
             CallableAction(write_file, Path("/etc/cloud/cloud.cfg.d/99-sudo-password.cfg"), CLOUD_SUDO_OVERRIDE)),
        Step.command("Remove unused packages", "apt", "autoremove", "-y", ignorable=True),
        Step.command("Clean apt cache", "apt", "clean", ignorable=True),
        Step.shell("Remove temporary .deb files", "rm -f /tmp/*.deb", ignorable=True),
    ]


def desktop_configure_plan() -> List[Step]:
    """Configure an Ubuntu desktop image: packages, browser, firewall, GNOME defaults."""
    apt_env = {"DEBIAN_FRONTEND": "noninteractive"}
    steps = [
        Step.command("Disable LTS release upgrade prompts",
                     "sed", "-i", "s/^Prompt=.*/Prompt=never/", "/etc/update-manager/release-upgrades"),
        Step.command("Update package lists", "apt", "update"),
        Step.command("Upgrade system packages", "apt", "full-upgrade", "-y"),
        Step.command("Install ubuntu-restricted-extras",
                     "apt-get", "install", "-y", "ubuntu-restricted-extras", env=apt_env),
        Step.command("Install Flatpak", "apt", "install", "-y", "flatpak"),
        Step.command("Install GNOME Flatpak plugin", "apt", "install", "-y", "gnome-software-plugin-flatpak"),
        Step.command("Add Flathub remote", "flatpak", "remote-add", "--if-not-exists", "flathub",
                     "https://dl.flathub.org/repo/flathub.flatpakrepo"),
        Step.command("Remove Snap Firefox", "snap", "remove", "firefox", ignorable=True),
        Step.command("Remove Firefox stub package", "apt", "remove", "--purge", "-y", "firefox"),
        Step.command("Remove Mozillateam PPA", "add-apt-repository", "--remove", "-y", "ppa:mozillateam/ppa",
                     ignorable=True),
        Step.command("Remove old Firefox pinning", "rm", "-f", "/etc/apt/preferences.d/mozilla-firefox"),
        Step.shell("Remove Mozillateam PPA sources", "rm -f /etc/apt/sources.list.d/mozillateam-ubuntu-ppa*"),
        Step.command("Create APT keyring directory", "install", "-d", "-m", "0755", "/etc/apt/keyrings"),
        Step.shell("Download Mozilla APT signing key",
                   "wget -q https://packages.mozilla.org/apt/repo-signing-key.gpg -O- "
                   "> /etc/apt/keyrings/packages.mozilla.org.asc"),
        Step("Add Mozilla APT repository", CallableAction(
            write_file, Path("/etc/apt/sources.list.d/mozilla.list"),
            "deb [signed-by=/etc/apt/keyrings/packages.mozilla.org.asc] https://packages.mozilla.org/apt mozilla main\n",
        )),
        Step("Pin Firefox to the Mozilla repository",
             CallableAction(write_file, Path("/etc/apt/preferences.d/mozilla"), MOZILLA_PIN)),
        Step.command("Refresh package lists", "apt", "update"),
        Step.command("Install Firefox from Mozilla", "apt", "install", "-y", "--allow-downgrades", "firefox",
                     condition=package_missing("firefox")),
        Step.shell("Pin Firefox to the dock",
                   "gsettings set org.gnome.shell favorite-apps "
                   "\"$(gsettings get org.gnome.shell favorite-apps | "
                   "sed -e \"s/'firefox.desktop',*//\" -e \"s/\\[\\(.*\\)\\]/['firefox.desktop', \\1]/\")\""),
        Step.command("Firewall: deny incoming", "ufw", "default", "deny", "incoming"),
        Step.command("Firewall: allow outgoing", "ufw", "default", "allow", "outgoing"),
        Step.command("Firewall: allow ssh", "ufw", "allow", "ssh"),
        Step.command("Enable firewall", "ufw", "--force", "enable"),
        Step.command("Install language and spelling support", "apt", "install", "-y", *LANGUAGE_PACKAGES),
    ]

    for name, app_id in FLATPAK_APPS.items():
        steps.append(Step.command(f"Install {name} (Flatpak)",
                                  "flatpak", "install", "-y", "--system", "flathub", app_id))

    steps += [
        Step.command("Wait for snap seeding", "snap", "wait", "system", "seed.loaded", condition=snap_seeding),
        Step.command("Refresh snaps", "snap", "refresh"),
        Step.command("Remove Snap Store", "snap", "remove", "snap-store"),
        Step.shell("Remove Snap Store desktop entries",
                   "rm -f /home/*/.local/share/applications/snap-store_*.desktop", ignorable=True),
        Step.command("Create dconf database directory", "mkdir", "-p", "/etc/dconf/db/local.d"),
        Step("Write GNOME defaults",
             CallableAction(write_file, Path("/etc/dconf/db/local.d/00-gnome-settings"), GNOME_DEFAULTS)),
        Step.command("Create dconf profile directory", "mkdir", "-p", "/etc/dconf/profile"),
        Step("Write dconf user profile", CallableAction(write_file, Path("/etc/dconf/profile/user"), DCONF_PROFILE)),
        Step.command("Update dconf database", "dconf", "update", ignorable=True),
        Step.command("Create XDG config directory", "mkdir", "-p", "/etc/xdg"),
        Step("Write default applications", CallableAction(write_file, Path("/etc/xdg/mimeapps.list"), mime_defaults())),
        Step("Download IPVanish configuration", DownloadAction(VPN_CONFIG_URL, VPN_CONFIG_ZIP), ignorable=True),
        Step.command("Create VPN config directory", "mkdir", "-p", str(VPN_CONFIG_DIR),
                     condition=exists(VPN_CONFIG_ZIP)),
        Step.command("Extract VPN configuration", "unzip", "-q", str(VPN_CONFIG_ZIP), "-d", str(VPN_CONFIG_DIR),
                     ignorable=True, condition=exists(VPN_CONFIG_ZIP)),
        Step.command("Remove VPN configuration archive", "rm", "-f", str(VPN_CONFIG_ZIP),
                     condition=exists(VPN_CONFIG_ZIP)),
        Step.command("Remove GNOME Initial Setup", "apt", "purge", "-y", "gnome-initial-setup", ignorable=True),
        Step.command("Disable Ubuntu report telemetry", "sed", "-i", "s/enabled=1/enabled=0/",
                     "/etc/default/ubuntu-report", ignorable=True, condition=exists(Path("/etc/default/ubuntu-report"))),
        Step.command("Disable whoopsie crash reporting", "systemctl", "disable", "--now", "whoopsie.service",
                     ignorable=True),
        Step.command("Create Ubuntu Pro config directory", "mkdir", "-p", "/etc/ubuntu-advantage"),
        Step("Disable Ubuntu Pro auto-attach",
             CallableAction(write_file, Path("/etc/ubuntu-advantage/uaclient.conf"), "enable_auto_attached: false\n")),
        Step.command("Disable ESM infra prompts", "ua", "disable", "esm-infra", ignorable=True),
        Step.command("Update system-wide Flatpaks", "flatpak", "update", "--system", "-y", ignorable=True),
        Step.command("Remove splash from kernel command line", "sed", "-i",
                     r's/\(GRUB_CMDLINE_LINUX_DEFAULT="[^"]*\) splash\([^"]*"\)/\1\2/', "/etc/default/grub"),
        Step.command("Update GRUB", "update-grub"),
    ]
    return steps


PLANS: Dict[str, Callable[[], List[Step]]] = {
    "template-cleanup": template_cleanup_plan,
    "desktop-configure": desktop_configure_plan,
}


def get_plan(name: str) -> List[Step]:
    try:
        factory = PLANS[name]
    except KeyError:
        raise UnknownPlanError(name, sorted(PLANS)) from None
    steps = factory()
    logger.debug("Loaded plan", extra={"plan": name, "steps": len(steps)})
    return steps
