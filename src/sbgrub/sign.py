# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import enum
import logging
import os
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

import pefile  # type: ignore

from sbgrub.errors import SigningError, UpstreamSignatureInvalid
from sbgrub.gpg import Keyring
from sbgrub.util import find_tool, phase, run, warn
from sbgrub.vault import UnlockedKey

logger = logging.getLogger(__name__)

# The external PE signers are known to fail spuriously now and then.
SIGN_ATTEMPTS = 50

SIGNATURE_SUFFIX = '.sig'

DEFAULT_KERNEL_PATTERNS = ('vmlinuz-*', 'initrd.img-*', 'initramfs-*.img')


class SignatureKind(enum.Enum):
    EMBEDDED = 'embedded'
    DETACHED = 'detached'


def signature_path(path: Path) -> Path:
    return path.with_name(path.name + SIGNATURE_SUFFIX)


@dataclasses.dataclass(frozen=True)
class SignedArtifact:
    path: Path
    kind: SignatureKind

    @property
    def signature(self) -> Optional[Path]:
        if self.kind is SignatureKind.EMBEDDED:
            return None
        return signature_path(self.path)


def pe_has_signature(path: Path) -> bool:
    pe = pefile.PE(os.fspath(path), fast_load=True)
    try:
        security = pe.OPTIONAL_HEADER.DATA_DIRECTORY[pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_SECURITY']]
        return security.VirtualAddress != 0 and security.Size != 0
    finally:
        pe.close()


class SignTool:
    @staticmethod
    def sign(input_f: str, output_f: str, key: Path, cert: Path, tools: Sequence[Path] = ()) -> None:
        raise NotImplementedError()

    @staticmethod
    def is_signed(path: Path) -> bool:
        return pe_has_signature(path)

    @staticmethod
    def from_string(name: str) -> type['SignTool']:
        if name == 'sbsign':
            return SbSign
        elif name == 'systemd-sbsign':
            return SystemdSbSign
        else:
            raise ValueError(f'Invalid sign tool: {name!r}')


class SbSign(SignTool):
    @staticmethod
    def sign(input_f: str, output_f: str, key: Path, cert: Path, tools: Sequence[Path] = ()) -> None:
        tool = find_tool('sbsign', tools=tools, msg='sbsign, required for signing, is not installed')
        cmd = [
            tool,
            '--key', key,
            '--cert', cert,
            input_f,
            '--output', output_f,
        ]  # fmt: skip
        run(cmd, check=True)


class SystemdSbSign(SignTool):
    @staticmethod
    def sign(input_f: str, output_f: str, key: Path, cert: Path, tools: Sequence[Path] = ()) -> None:
        tool = find_tool(
            'systemd-sbsign',
            '/usr/lib/systemd/systemd-sbsign',
            tools=tools,
            msg='systemd-sbsign, required for signing, is not installed',
        )
        cmd = [
            tool,
            'sign',
            '--private-key', key,
            '--certificate', cert,
            input_f,
            '--output', output_f,
        ]  # fmt: skip
        run(cmd, check=True)


@dataclasses.dataclass(frozen=True)
class KernelRequest:
    version: Optional[str] = None
    image: Optional[Path] = None

    @property
    def effective_version(self) -> Optional[str]:
        if self.version:
            return self.version
        if self.image is not None and (m := re.match(r'vmlinu[xz]-(.+)$', self.image.name)):
            return m.group(1)
        return None


def find_kernel_artifacts(boot_dir: Path, patterns: Sequence[str] = DEFAULT_KERNEL_PATTERNS) -> list[Path]:
    found: set[Path] = set()
    for pattern in patterns:
        found.update(p for p in boot_dir.glob(pattern) if p.is_file() and p.suffix != SIGNATURE_SUFFIX)
    return sorted(found)


def artifacts_for_version(
    boot_dir: Path,
    version: str,
    patterns: Sequence[str] = DEFAULT_KERNEL_PATTERNS,
) -> list[Path]:
    paths = [boot_dir / pattern.replace('*', version, 1) for pattern in patterns]
    return [p for p in paths if p.is_file()]


def remove_artifact(path: Path) -> None:
    """Remove an artifact together with its detached signature."""
    for p in (path, signature_path(path)):
        try:
            p.unlink()
            logger.info(f'Removed {p}')
        except FileNotFoundError:
            pass


def remove_orphaned_signatures(boot_dir: Path, patterns: Sequence[str] = DEFAULT_KERNEL_PATTERNS) -> list[Path]:
    removed = []
    for pattern in patterns:
        for sig in sorted(boot_dir.glob(pattern + SIGNATURE_SUFFIX)):
            artifact = sig.with_name(sig.name[: -len(SIGNATURE_SUFFIX)])
            if not artifact.exists():
                sig.unlink()
                logger.info(f'Removed orphaned signature {sig}')
                removed += [sig]
    return removed


class Signer:
    """Detached and embedded signatures with one unlocked key."""

    def __init__(
        self,
        unlocked: UnlockedKey,
        keyring: Keyring,
        signtool: type[SignTool] = SbSign,
        tools: Sequence[Path] = (),
        upstream_keyring: Optional[Path] = None,
        require_upstream_signature: bool = False,
        upstream: Optional[Keyring] = None,
    ):
        self.unlocked = unlocked
        self.keyring = keyring
        self.signtool = signtool
        self.tools = tools
        self.upstream_keyring = upstream_keyring
        self.require_upstream_signature = require_upstream_signature
        # Distribution keys live in the default keyring, not in ours.
        self.upstream = upstream or Keyring(None, tools=tools)
        self.attempts = 0

    def detached_sign(self, path: Path) -> SignedArtifact:
        try:
            sig = self.keyring.detach_sign(self.unlocked.fingerprint, path, self.unlocked.passphrase_file)
        except (subprocess.CalledProcessError, OSError, ValueError) as e:
            raise SigningError(f'Detached signing of {path} failed: {e}') from e

        if not self.keyring.verify(path, sig):
            raise SigningError(f'Detached signature {sig} does not verify')

        return SignedArtifact(path, SignatureKind.DETACHED)

    def sign_tree(self, root: Path) -> list[SignedArtifact]:
        files = sorted(p for p in root.rglob('*') if p.is_file() and p.suffix != SIGNATURE_SUFFIX)
        logger.info(f'Signing {len(files)} files under {root}')
        return [self.detached_sign(p) for p in files]

    def embed_sign(self, path: Path) -> SignedArtifact:
        output = path.with_name(path.name + '.signed')

        self.attempts = 0
        last_error: Optional[Exception] = None
        for attempt in range(1, SIGN_ATTEMPTS + 1):
            self.attempts = attempt
            try:
                self.signtool.sign(
                    os.fspath(path),
                    os.fspath(output),
                    self.unlocked.db_key,
                    self.unlocked.db_cert,
                    self.tools,
                )
            except subprocess.CalledProcessError as e:
                last_error = e
                warn(f'Signing {path.name} failed (attempt {attempt}/{SIGN_ATTEMPTS}): {e}')
                continue
            except (OSError, ValueError) as e:
                raise SigningError(f'Cannot sign {path}: {e}') from e
            break
        else:
            output.unlink(missing_ok=True)
            raise SigningError(f'Signing {path} failed {SIGN_ATTEMPTS} times, last error: {last_error}')

        try:
            signed = self.signtool.is_signed(output)
        except pefile.PEFormatError as e:
            raise SigningError(f'{output} is not a PE binary: {e}') from e
        if not signed:
            raise SigningError(f'{output} carries no signature after signing')

        os.replace(output, path)
        return SignedArtifact(path, SignatureKind.EMBEDDED)

    def check_upstream(self, source: Path) -> None:
        sig = signature_path(source)
        if not sig.exists():
            if self.require_upstream_signature:
                raise UpstreamSignatureInvalid(f'{source} has no upstream signature {sig}')
            return

        if not self.upstream.verify(source, sig, keyring=self.upstream_keyring):
            raise UpstreamSignatureInvalid(f'Upstream signature {sig} does not verify for {source}')
        logger.info(f'Upstream signature of {source} verified')

    def resign_kernel(
        self,
        request: KernelRequest,
        boot_dir: Path,
        patterns: Sequence[str] = DEFAULT_KERNEL_PATTERNS,
    ) -> list[SignedArtifact]:
        version = request.effective_version
        targets: list[Path] = []

        if request.image is not None:
            if request.image.resolve().parent != boot_dir.resolve():
                # Kernel comes from elsewhere, possibly signed by the distribution.
                self.check_upstream(request.image)
                target = boot_dir / (f'vmlinuz-{version}' if version else request.image.name)
                logger.info(f'Installing {request.image} as {target}')
                shutil.copy2(request.image, target)
                targets += [target]
            elif request.image.is_file():
                targets += [request.image]
            else:
                raise SigningError(f'Kernel {request.image} does not exist')

        if version:
            targets += [p for p in artifacts_for_version(boot_dir, version, patterns) if p not in targets]

        if not targets:
            raise SigningError(f'No kernel found for {version or request.image}')

        phase(f'Signing kernel {version or request.image}')
        return [self.detached_sign(p) for p in targets]

    def sign_kernels(self, boot_dir: Path, patterns: Sequence[str] = DEFAULT_KERNEL_PATTERNS) -> list[SignedArtifact]:
        artifacts = find_kernel_artifacts(boot_dir, patterns)
        phase(f'Signing {len(artifacts)} kernel and initramfs images in {boot_dir}')
        return [self.detached_sign(p) for p in artifacts]
