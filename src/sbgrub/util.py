# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=unused-argument

import contextlib
import fnmatch
import logging
import os
import pydoc
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import Iterator, Sequence
from pathlib import Path
from types import FrameType
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

EFI_ARCH_MAP = {
    # host_arch glob : [efi_arch, 32_bit_efi_arch if mixed mode is supported]
    'x86_64':        ['x64', 'ia32'],
    'i[3456]86':     ['ia32'],
    'aarch64':       ['aa64'],
    'armv[45678]*l': ['arm'],
    'loongarch64':   ['loongarch64'],
    'riscv64':       ['riscv64'],
}  # fmt: skip
EFI_ARCHES: list[str] = sum(EFI_ARCH_MAP.values(), [])

# EFI architecture : GRUB platform directory name
GRUB_PLATFORMS = {
    'x64':         'x86_64-efi',
    'ia32':        'i386-efi',
    'aa64':        'arm64-efi',
    'arm':         'arm-efi',
    'loongarch64': 'loongarch64-efi',
    'riscv64':     'riscv64-efi',
}  # fmt: skip


class Style:
    bold = '\033[0;1;39m' if sys.stderr.isatty() else ''
    red = '\033[31;1m' if sys.stderr.isatty() else ''
    yellow = '\033[33;1m' if sys.stderr.isatty() else ''
    reset = '\033[0m' if sys.stderr.isatty() else ''


def guess_efi_arch() -> str:
    arch = os.uname().machine

    for glob, mapping in EFI_ARCH_MAP.items():
        if fnmatch.fnmatch(arch, glob):
            efi_arch, *fallback = mapping
            break
    else:
        raise ValueError(f'Unsupported architecture {arch}')

    # This makes sense only on some architectures, but it also probably doesn't
    # hurt on others, so let's just apply the check everywhere.
    if fallback:
        fw_platform_size = Path('/sys/firmware/efi/fw_platform_size')
        try:
            size = fw_platform_size.read_text().strip()
        except FileNotFoundError:
            pass
        else:
            if int(size) == 32:
                efi_arch = fallback[0]

    return efi_arch


def grub_platform(efi_arch: str) -> str:
    try:
        return GRUB_PLATFORMS[efi_arch]
    except KeyError:
        raise ValueError(f'No GRUB platform for EFI architecture {efi_arch!r}') from None


OS_RELEASE_FILES = [Path('/etc/os-release'), Path('/usr/lib/os-release')]


def distributor_id() -> Optional[str]:
    """The ID= field of os-release, which distributions also use as their ESP directory name."""
    for p in OS_RELEASE_FILES:
        if p.exists():
            break
    else:
        return None

    for line in p.read_text().splitlines():
        key, sep, value = line.partition('=')
        if sep and key.strip() == 'ID':
            words = shlex.split(value)
            return words[0] if words else None
    return None


def page(text: str, enabled: Optional[bool]) -> None:
    if enabled:
        os.environ.setdefault('LESS', 'FRSXMK')
        pydoc.pager(text)
    else:
        print(text)


def shell_join(cmd: Sequence[Union[str, Path]]) -> str:
    return ' '.join(shlex.quote(str(x)) for x in cmd)


def phase(text: str) -> None:
    logger.info(f'{Style.bold}{text}{Style.reset}')


def warn(text: str) -> None:
    logger.warning(f'{Style.yellow}Warning:{Style.reset} {text}')


def find_tool(
    name: str,
    fallback: Optional[str] = None,
    tools: Sequence[Path] = (),
    msg: str = 'Tool {name} not installed!',
) -> Union[str, Path]:
    for d in tools:
        tool = d / name
        if tool.exists():
            return tool

    if shutil.which(name) is not None:
        return name

    if fallback is None:
        raise ValueError(msg.format(name=name))

    return fallback


def run(cmd: Sequence[Union[str, Path]], **kwargs: Any) -> subprocess.CompletedProcess:
    logger.info(f'+ {shell_join(cmd)}')
    return subprocess.run(cmd, **kwargs)


@contextlib.contextmanager
def temporary_umask(mask: int) -> Iterator[None]:
    # Drop <mask> bits from umask
    old = os.umask(0)
    os.umask(old | mask)
    try:
        yield
    finally:
        os.umask(old)


def scrub_file(path: Path) -> None:
    """Overwrite a file with zeros and remove it. Missing files are ignored."""
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return

    with open(path, 'r+b') as f:
        f.write(b'\0' * size)
        f.flush()
        os.fsync(f.fileno())
    path.unlink()


def write_atomic(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Write data to a new file next to path and rename it into place."""
    tmp = path.with_name(f'.#{path.name}.new')
    try:
        with open(tmp, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


INTERRUPTED = False


def onsignal(signum: int, frame: Optional[FrameType]) -> None:
    global INTERRUPTED
    if INTERRUPTED:
        return

    INTERRUPTED = True
    raise KeyboardInterrupt()


@contextlib.contextmanager
def interruptible() -> Iterator[None]:
    """Turn SIGTERM and SIGHUP into KeyboardInterrupt, so cleanup handlers run."""
    global INTERRUPTED
    INTERRUPTED = False

    old = {sig: signal.signal(sig, onsignal) for sig in (signal.SIGTERM, signal.SIGHUP)}
    try:
        yield
    finally:
        for sig, handler in old.items():
            signal.signal(sig, handler)
