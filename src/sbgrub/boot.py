# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import fnmatch
import logging
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from sbgrub.errors import RegistrationError
from sbgrub.image import StandaloneImage
from sbgrub.util import find_tool, phase, run, warn, write_atomic

logger = logging.getLogger(__name__)

VENDOR_PATTERNS = ('*.efi', 'grub.cfg')

GRUB_CFG_STUB = '''\
# This file is intentionally empty. The boot menu is embedded in the signed
# boot image and files on this partition are not trusted.
'''


@dataclasses.dataclass(frozen=True)
class BootEntry:
    number: str
    label: str
    loader: Optional[str] = None
    active: bool = True


def parse_boot_entries(text: str) -> list[BootEntry]:
    entries = []
    for line in text.splitlines():
        m = re.match(r'Boot([0-9A-Fa-f]{4})(\*?)\s+([^\t]*)(?:\t(.*))?$', line)
        if not m:
            continue
        number, active, label, loader = m.groups()
        entries += [BootEntry(number, label.strip(), loader, active == '*')]
    return entries


class BootManager:
    """Firmware boot entries, through efibootmgr."""

    def __init__(self, tools: Sequence[Path] = ()):
        self.tools = tools

    def _efibootmgr(self) -> list:
        return [find_tool('efibootmgr', tools=self.tools, msg='efibootmgr, required for boot entries, is not installed')]

    def list(self) -> list[BootEntry]:
        proc = run(self._efibootmgr(), check=True, stdout=subprocess.PIPE, text=True)
        return parse_boot_entries(proc.stdout)

    def delete(self, number: str) -> None:
        run([*self._efibootmgr(), '--quiet', '--delete-bootnum', '--bootnum', number], check=True)

    def create(self, disk: str, partition: int, label: str, loader: str) -> BootEntry:
        cmd = [
            *self._efibootmgr(),
            '--quiet',
            '--create',
            '--disk', disk,
            '--part', str(partition),
            '--label', label,
            '--loader', loader,
        ]  # fmt: skip
        run(cmd, check=True)

        for entry in self.list():
            if entry.label == label:
                return entry
        raise RegistrationError(f'Boot entry {label!r} not found after creating it')


class DeviceResolver:
    """Maps a mount point to the disk and partition number backing it."""

    def __init__(self, tools: Sequence[Path] = (), sysfs: Path = Path('/sys')):
        self.tools = tools
        self.sysfs = sysfs

    def source(self, mountpoint: Path) -> str:
        tool = find_tool('findmnt', tools=self.tools)
        proc = run([tool, '--noheadings', '--output', 'SOURCE', '--target', mountpoint],
                   check=True, stdout=subprocess.PIPE, text=True)
        return proc.stdout.strip()

    def resolve(self, mountpoint: Path) -> tuple[str, int]:
        source = self.source(mountpoint)
        if not source.startswith('/dev/'):
            raise RegistrationError(f'{mountpoint} is not backed by a block device ({source!r})')

        block = self.sysfs / 'class/block' / Path(source).name
        try:
            partition = int((block / 'partition').read_text())
        except (OSError, ValueError) as e:
            raise RegistrationError(f'{source} is not a partition: {e}') from e

        disk = block.resolve().parent.name
        return f'/dev/{disk}', partition


def loader_path(bootloader_id: str, efi_arch: str) -> str:
    return f'\\EFI\\{bootloader_id}\\grub{efi_arch}.efi'


class TrustEnforcer:
    """Installs the signed image and removes everything the firmware should not trust."""

    def __init__(
        self,
        efi_dir: Path,
        boot_dir: Path,
        efi_arch: str,
        platform: str,
        bootloader_id: str = 'sbgrub',
        label: str = 'Secure GRUB',
        vendor_dirs: Sequence[Path] = (),
        manager: Optional[BootManager] = None,
        resolver: Optional[DeviceResolver] = None,
    ):
        self.efi_dir = efi_dir
        self.boot_dir = boot_dir
        self.efi_arch = efi_arch
        self.platform = platform
        self.bootloader_id = bootloader_id
        self.label = label
        self.vendor_dirs = vendor_dirs
        self.manager = manager or BootManager()
        self.resolver = resolver or DeviceResolver()

    @property
    def image_path(self) -> Path:
        return self.efi_dir / 'EFI' / self.bootloader_id / f'grub{self.efi_arch}.efi'

    def install_image(self, image: StandaloneImage) -> Path:
        target = self.image_path
        target.parent.mkdir(parents=True, exist_ok=True)
        write_atomic(target, image.path.read_bytes())
        logger.info(f'Installed {target}')
        return target

    def delete_entries(self) -> None:
        try:
            entries = self.manager.list()
        except (subprocess.CalledProcessError, OSError, ValueError) as e:
            warn(f'Cannot list boot entries: {e}')
            return

        for entry in entries:
            if entry.label != self.label:
                continue
            try:
                self.manager.delete(entry.number)
                logger.info(f'Deleted boot entry Boot{entry.number} ({entry.label})')
            except (subprocess.CalledProcessError, OSError, ValueError) as e:
                warn(f'Cannot delete boot entry Boot{entry.number}: {e}')

    def register(self) -> BootEntry:
        try:
            disk, partition = self.resolver.resolve(self.efi_dir)
            entry = self.manager.create(disk, partition, self.label, loader_path(self.bootloader_id, self.efi_arch))
        except (subprocess.CalledProcessError, OSError, ValueError) as e:
            raise RegistrationError(f'Creating boot entry {self.label!r} failed: {e}') from e

        logger.info(f'Created boot entry Boot{entry.number} ({entry.label})')
        return entry

    def purge(self) -> list[Path]:
        removed = []
        keep = self.image_path.resolve()

        for d in self.vendor_dirs:
            if not d.is_dir():
                continue
            for path in sorted(d.rglob('*')):
                if path.resolve() == keep:
                    continue
                if path.is_file() and any(fnmatch.fnmatch(path.name, pat) for pat in VENDOR_PATTERNS):
                    path.unlink()
                    removed += [path]

        grub = self.boot_dir / 'grub'
        for name in ('fonts', 'locale', self.platform):
            if (grub / name).is_dir():
                shutil.rmtree(grub / name)
                removed += [grub / name]
        if (grub / 'grubenv').exists():
            (grub / 'grubenv').unlink()
            removed += [grub / 'grubenv']

        if grub.is_dir():
            write_atomic(grub / 'grub.cfg', GRUB_CFG_STUB.encode())

        for path in removed:
            logger.info(f'Removed untrusted {path}')
        return removed

    def install(self, image: StandaloneImage) -> BootEntry:
        phase(f'Installing {image.path.name} as {self.label!r}')
        try:
            self.install_image(image)
        except OSError as e:
            raise RegistrationError(f'Writing {self.image_path} failed: {e}') from e

        self.delete_entries()
        entry = self.register()
        self.purge()
        return entry
