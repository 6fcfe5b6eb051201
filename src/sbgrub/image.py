# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import fnmatch
import logging
import shutil
import subprocess
import tarfile
import tempfile
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Optional, Protocol

from sbgrub.errors import AssemblyError
from sbgrub.util import find_tool, phase, run

logger = logging.getLogger(__name__)

# Modules needed to check detached signatures. They have to be built into the
# image: loading them from disk would mean loading unverified code.
VERIFY_MODULES = ('pgp', 'gcry_rsa', 'gcry_sha256', 'gcry_sha512')
MEMDISK_MODULES = ('memdisk', 'tar')

DEFAULT_MODULES = (
    'all_video', 'boot', 'cat', 'chain', 'configfile', 'echo', 'efi_gop',
    'efifwsetup', 'ext2', 'fat', 'font', 'gettext', 'gfxmenu', 'gfxterm',
    'gzio', 'halt', 'linux', 'loadenv', 'ls', 'lvm', 'normal', 'part_gpt',
    'part_msdos', 'reboot', 'search', 'search_fs_file', 'search_fs_uuid',
    'search_label', 'sleep', 'test', 'true', 'video',
)  # fmt: skip

# Bundled images and configuration are never reused, they are regenerated.
STRIP_PATTERNS = ('*.efi', '*.img', 'grub.cfg', 'load.cfg')

ENFORCE_HEADER = '''\
set check_signatures=enforce
export check_signatures
'''

GRUBENV_SIZE = 1024
GRUBENV_HEADER = '# GRUB Environment Block\n'


def trust_policy(modules: Iterable[str]) -> list[str]:
    """The required module list: configured modules plus the ones the trust chain needs."""
    required: list[str] = []
    for name in (*modules, *VERIFY_MODULES, *MEMDISK_MODULES):
        if name not in required:
            required += [name]
    return required


@dataclasses.dataclass
class ModuleSet:
    available: set[str]
    required: list[str]

    @classmethod
    def from_directory(cls, moddir: Path, required: Sequence[str]) -> 'ModuleSet':
        available = {p.stem for p in moddir.glob('*.mod')} if moddir.is_dir() else set()
        return cls(available, list(required))

    def selected(self) -> list[str]:
        out: list[str] = []
        for name in self.required:
            if name in self.available and name not in out:
                out += [name]
        return out

    def missing(self) -> list[str]:
        return [name for name in self.required if name not in self.available]


@dataclasses.dataclass(frozen=True)
class StandaloneImage:
    path: Path
    platform: str
    modules: list[str]


class StagingTree:
    """A private directory tree for one run. Removed on exit, whatever happens."""

    def __init__(self, prefix: str = 'sbgrub-staging'):
        self.prefix = prefix
        self.root: Optional[Path] = None

    def __enter__(self) -> 'StagingTree':
        self.root = Path(tempfile.mkdtemp(prefix=self.prefix))
        self.grub.mkdir(parents=True)
        return self

    def __exit__(self, *args: Any) -> None:
        if self.root is not None:
            shutil.rmtree(self.root, ignore_errors=True)
            self.root = None

    @property
    def boot(self) -> Path:
        assert self.root is not None
        return self.root / 'boot'

    @property
    def grub(self) -> Path:
        return self.boot / 'grub'

    @property
    def memdisk(self) -> Path:
        assert self.root is not None
        return self.root / 'memdisk.tar'

    @property
    def pubkey(self) -> Path:
        assert self.root is not None
        return self.root / 'pubkey.gpg'

    def files(self) -> list[Path]:
        return sorted(p for p in self.boot.rglob('*') if p.is_file())


class TreeSigner(Protocol):
    def sign_tree(self, root: Path) -> Any: ...


class ImageBuilder:
    """Wraps grub-mkconfig and grub-mkimage."""

    def __init__(self, tools: Sequence[Path] = ()):
        self.tools = tools

    def make_config(self, output: Path) -> None:
        tool = find_tool('grub-mkconfig', tools=self.tools)
        run([tool, '--output', output], check=True)

    def make_image(
        self,
        moddir: Path,
        platform: str,
        memdisk: Path,
        pubkey: Path,
        modules: Sequence[str],
        output: Path,
    ) -> None:
        tool = find_tool('grub-mkimage', tools=self.tools, msg='grub-mkimage, required for the boot image, is not installed')
        cmd = [
            tool,
            '--directory', moddir,
            '--format', platform,
            '--prefix', '(memdisk)/boot/grub',
            '--memdisk', memdisk,
            '--pubkey', pubkey,
            '--output', output,
            *modules,
        ]  # fmt: skip
        run(cmd, check=True)


def write_grubenv(path: Path) -> None:
    path.write_text(GRUBENV_HEADER + '#' * (GRUBENV_SIZE - len(GRUBENV_HEADER)))


def strip_bundled(root: Path) -> list[Path]:
    removed = []
    for path in sorted(root.rglob('*')):
        if path.is_file() and any(fnmatch.fnmatch(path.name, pat) for pat in STRIP_PATTERNS):
            path.unlink()
            removed += [path]
    return removed


class ImageAssembler:
    def __init__(
        self,
        platform: str,
        grub_lib_dir: Path,
        modules: Sequence[str],
        font: Optional[Path] = None,
        locale_dir: Optional[Path] = None,
        config_source: Optional[Path] = None,
        builder: Optional[ImageBuilder] = None,
    ):
        self.platform = platform
        self.moddir = grub_lib_dir / platform
        self.required = trust_policy(modules)
        self.font = font
        self.locale_dir = locale_dir
        self.config_source = config_source
        self.builder = builder or ImageBuilder()

    def module_set(self) -> ModuleSet:
        return ModuleSet.from_directory(self.moddir, self.required)

    def check_modules(self) -> list[str]:
        modset = self.module_set()
        selected = modset.selected()
        if not selected:
            raise AssemblyError(f'None of the required GRUB modules are available in {self.moddir}')

        missing = [m for m in VERIFY_MODULES if m not in selected]
        if missing:
            raise AssemblyError(f'Signature verification modules not available in {self.moddir}: {" ".join(missing)}')

        skipped = modset.missing()
        if skipped:
            logger.info(f'Skipping modules not shipped by this GRUB version: {" ".join(skipped)}')
        return selected

    def collect(self, staging: StagingTree) -> None:
        logger.info(f'Copying GRUB runtime files from {self.moddir}')
        shutil.copytree(self.moddir, staging.grub / self.platform)

        if self.font and self.font.is_file():
            (staging.grub / 'fonts').mkdir()
            shutil.copy2(self.font, staging.grub / 'fonts' / self.font.name)

        if self.locale_dir and self.locale_dir.is_dir():
            for mo in sorted(self.locale_dir.glob('*/LC_MESSAGES/grub.mo')):
                lang = mo.parent.parent.name
                (staging.grub / 'locale').mkdir(exist_ok=True)
                shutil.copy2(mo, staging.grub / 'locale' / f'{lang}.mo')

        write_grubenv(staging.grub / 'grubenv')

        for path in strip_bundled(staging.boot):
            logger.info(f'Dropped bundled {path.relative_to(staging.boot)}')

    def write_config(self, staging: StagingTree) -> None:
        output = staging.grub / 'grub.cfg'

        if self.config_source is not None:
            logger.info(f'Using boot menu from {self.config_source}')
            text = self.config_source.read_text()
        else:
            with tempfile.TemporaryDirectory(prefix='sbgrub-config') as tmp:
                generated = Path(tmp) / 'grub.cfg'
                self.builder.make_config(generated)
                text = generated.read_text()

        output.write_text(ENFORCE_HEADER + text)

    def archive(self, staging: StagingTree) -> Path:
        with tarfile.open(staging.memdisk, 'w', format=tarfile.GNU_FORMAT) as tar:
            tar.add(staging.boot, arcname='boot')
        return staging.memdisk

    def assemble(self, staging: StagingTree, pubkey: Path, signer: TreeSigner) -> StandaloneImage:
        phase('Assembling standalone boot image')
        modules = self.check_modules()

        try:
            self.collect(staging)
            self.write_config(staging)
        except (OSError, subprocess.CalledProcessError, ValueError) as e:
            raise AssemblyError(f'Staging GRUB files failed: {e}') from e

        signer.sign_tree(staging.boot)

        assert staging.root is not None
        output = staging.root / f'grub-{self.platform}.efi'
        try:
            memdisk = self.archive(staging)
            self.builder.make_image(self.moddir, self.platform, memdisk, pubkey, modules, output)
        except (OSError, subprocess.CalledProcessError, ValueError) as e:
            raise AssemblyError(f'Building the boot image failed: {e}') from e

        if not output.is_file():
            raise AssemblyError(f'Image builder did not produce {output}')

        logger.info(f'Built {output.name} with modules: {" ".join(modules)}')
        return StandaloneImage(output, self.platform, modules)
