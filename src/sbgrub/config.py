# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import builtins
import configparser
import dataclasses
import enum
import logging
import os
import socket
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, Callable, Optional, Union

from sbgrub import __version__
from sbgrub.image import DEFAULT_MODULES
from sbgrub.sign import DEFAULT_KERNEL_PATTERNS, KernelRequest, SignTool
from sbgrub.util import EFI_ARCHES, GRUB_PLATFORMS, Style, distributor_id, grub_platform, guess_efi_arch, page

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIRS = ['/etc/sbgrub', '/run/sbgrub', '/usr/local/lib/sbgrub', '/usr/lib/sbgrub']
DEFAULT_CONFIG_FILE = 'sbgrub.conf'

VERBS = ('install', 'kernel-hook', 'sign-all', 'genkey', 'verify')


class Mode(enum.Enum):
    FULL_INSTALL = 'full-install'
    ROUTINE_RESIGN = 'routine-resign'
    SIGN_ALL = 'sign-all'
    KERNEL_REMOVED = 'kernel-removed'
    GENKEY = 'genkey'
    VERIFY = 'verify'


def parse_boolean(s: str) -> bool:
    "Parse 1/true/yes/y/t/on as true and 0/false/no/n/f/off as false"
    s_l = s.lower()
    if s_l in {'1', 'true', 'yes', 'y', 't', 'on'}:
        return True
    if s_l in {'0', 'false', 'no', 'n', 'f', 'off'}:
        return False
    raise ValueError(f'Invalid boolean literal: {s!r}')


@dataclasses.dataclass(frozen=True)
class ConfigItem:
    @staticmethod
    def config_list_prepend(namespace: argparse.Namespace, dest: str, value: Any) -> None:
        "Prepend value to namespace.<dest>"
        old = getattr(namespace, dest, [])
        if old is None:
            old = []
        setattr(namespace, dest, value + old)

    @staticmethod
    def config_set_if_unset(namespace: argparse.Namespace, dest: str, value: Any) -> None:
        "Set namespace.<dest> to value only if it was None"
        if getattr(namespace, dest) is None:
            setattr(namespace, dest, value)

    # arguments for argparse.ArgumentParser.add_argument()
    name: Union[str, tuple[str, str]]
    dest: Optional[str] = None
    metavar: Optional[str] = None
    type: Optional[Callable[[str], Any]] = None
    nargs: Optional[str] = None
    action: Optional[Union[str, Callable[[str], Any], builtins.type[argparse.Action]]] = None
    default: Any = None
    version: Optional[str] = None
    choices: Optional[tuple[str, ...]] = None
    help: Optional[str] = None

    # metadata for config file parsing
    config_key: Optional[str] = None
    config_push: Callable[[argparse.Namespace, str, Any], None] = config_set_if_unset

    def _names(self) -> tuple[str, ...]:
        return self.name if isinstance(self.name, tuple) else (self.name,)

    def argparse_dest(self) -> str:
        if self.dest:
            return self.dest
        return self._names()[0].lstrip('-').replace('-', '_')

    def add_to(self, parser: argparse.ArgumentParser) -> None:
        kwargs = {
            key: val
            for key in dataclasses.asdict(self)
            if (key not in ('name', 'config_key', 'config_push') and (val := getattr(self, key)) is not None)
        }
        args = self._names()
        parser.add_argument(*args, **kwargs)

    def apply_config(self, namespace: argparse.Namespace, section: str, key: str, value: str) -> None:
        assert f'{section}/{key}' == self.config_key
        dest = self.argparse_dest()

        conv: Callable[[str], Any]
        if self.action == argparse.BooleanOptionalAction:
            # --foo/--no-foo on the command line, Foo=yes|no in the config file.
            conv = parse_boolean
        elif self.type:
            conv = self.type
        else:
            conv = lambda s: s  # noqa: E731

        # Options given several times on the command line are a
        # space-separated list in the config file.
        if self.action == 'append':
            self.config_push(namespace, dest, [conv(v) for v in value.split()])
        else:
            self.config_push(namespace, dest, conv(value))

    def config_example(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if not self.config_key:
            return None, None, None
        section_name, key = self.config_key.split('/', 1)
        if self.choices:
            value = '|'.join(self.choices)
        else:
            value = self.metavar or self.argparse_dest().upper()
        return (section_name, key, value)


CONFIG_ITEMS = [
    ConfigItem(
        'positional',
        metavar='VERB',
        nargs='*',
        help=argparse.SUPPRESS,
    ),
    ConfigItem(
        '--version',
        action='version',
        version=f'sbgrub {__version__}',
    ),
    ConfigItem(
        '--summary',
        help='print parsed config and exit',
        action='store_true',
    ),
    ConfigItem(
        ('--config', '-c'),
        metavar='PATH',
        type=Path,
        help='configuration file',
    ),
    ConfigItem(
        '--tools',
        type=Path,
        action='append',
        help='directories to search for external tools first',
    ),
    ConfigItem(
        '--log-level',
        choices=('debug', 'info', 'warning', 'error'),
        default='info',
        help='logging verbosity',
    ),
    ConfigItem(
        '--force',
        action='store_true',
        help='replace an existing signing identity without asking',
    ),
    ConfigItem(
        '--keystore',
        metavar='DIR',
        type=Path,
        help='directory holding the signing identity',
        config_key='KeyStore/Directory',
    ),
    ConfigItem(
        '--owner',
        metavar='NAME',
        help='name in the OpenPGP user id',
        config_key='Identity/Owner',
    ),
    ConfigItem(
        '--email',
        metavar='ADDRESS',
        help='email address in the OpenPGP user id',
        config_key='Identity/Email',
    ),
    ConfigItem(
        '--common-name',
        metavar='NAME',
        help='common name prefix of the Secure Boot certificates',
        config_key='Identity/CommonName',
    ),
    ConfigItem(
        '--efi-arch',
        metavar='ARCH',
        choices=('auto', *EFI_ARCHES),
        help='target EFI architecture',
        config_key='Image/EFIArch',
    ),
    ConfigItem(
        '--grub-lib-dir',
        metavar='DIR',
        type=Path,
        help='directory with the GRUB platform module directories',
        config_key='Image/GrubLibDirectory',
    ),
    ConfigItem(
        '--font',
        metavar='PF2',
        type=Path,
        help='GRUB font file to embed',
        config_key='Image/FontFile',
    ),
    ConfigItem(
        '--locale-dir',
        metavar='DIR',
        type=Path,
        help='directory with GRUB translations',
        config_key='Image/LocaleDirectory',
    ),
    ConfigItem(
        '--modules',
        metavar='MODULE',
        action='append',
        help='GRUB module to embed in the boot image',
        config_key='Image/Modules',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--config-source',
        metavar='PATH',
        type=Path,
        help='boot menu to embed instead of the output of grub-mkconfig',
        config_key='Image/ConfigSource',
    ),
    ConfigItem(
        '--signtool',
        choices=('sbsign', 'systemd-sbsign'),
        help='tool for the embedded signature of the boot image',
        config_key='Signing/SigningTool',
    ),
    ConfigItem(
        '--upstream-keyring',
        metavar='PATH',
        type=Path,
        help='keyring for verifying pre-signed kernels',
        config_key='Signing/UpstreamKeyring',
    ),
    ConfigItem(
        '--require-upstream-signature',
        action=argparse.BooleanOptionalAction,
        help='refuse kernels from outside the boot directory without upstream signature',
        config_key='Signing/RequireUpstreamSignature',
    ),
    ConfigItem(
        '--boot-dir',
        metavar='DIR',
        type=Path,
        help='directory with kernels and initramfs images',
        config_key='Boot/BootDirectory',
    ),
    ConfigItem(
        '--efi-dir',
        metavar='DIR',
        type=Path,
        help='mount point of the EFI system partition',
        config_key='Boot/EFIDirectory',
    ),
    ConfigItem(
        '--bootloader-id',
        metavar='ID',
        help='directory name below EFI/ on the system partition',
        config_key='Boot/BootloaderId',
    ),
    ConfigItem(
        '--label',
        metavar='TEXT',
        help='firmware boot entry label',
        config_key='Boot/Label',
    ),
    ConfigItem(
        '--vendor-dir',
        dest='vendor_dirs',
        metavar='DIR',
        type=Path,
        action='append',
        help='directory with vendor boot images to remove [default: EFI/<os-release ID>]',
        config_key='Boot/VendorDirectories',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--kernel-pattern',
        dest='kernel_patterns',
        metavar='GLOB',
        action='append',
        help='glob matching kernel and initramfs images in the boot directory',
        config_key='Boot/KernelPatterns',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--fallback-installer',
        metavar='PATH',
        type=Path,
        help='boot loader installer to run while no signing identity exists',
        config_key='Install/FallbackInstaller',
    ),
]

CONFIGFILE_ITEMS = {item.config_key: item for item in CONFIG_ITEMS if item.config_key}

DEFAULTS: dict[str, Any] = {
    'keystore': Path('/etc/sbgrub/keys'),
    'grub_lib_dir': Path('/usr/lib/grub'),
    'font': Path('/usr/share/grub/unicode.pf2'),
    'locale_dir': Path('/usr/share/locale'),
    'signtool': 'sbsign',
    'require_upstream_signature': False,
    'boot_dir': Path('/boot'),
    'efi_dir': Path('/boot/efi'),
    'bootloader_id': 'sbgrub',
    'label': 'Secure GRUB',
    'fallback_installer': Path('/usr/sbin/grub-install.real'),
}


def apply_config(namespace: argparse.Namespace, filename: Union[str, Path, None] = None) -> None:
    if filename is None:
        if namespace.config:
            filename = namespace.config
            logger.info(f'Using config file: {filename}')
        else:
            for config_dir in DEFAULT_CONFIG_DIRS:
                filename = Path(config_dir) / DEFAULT_CONFIG_FILE
                if filename.is_file():
                    logger.info(f'Using found config file: {filename}')
                    break
            else:
                return

    cp = configparser.ConfigParser(
        comment_prefixes='#',
        inline_comment_prefixes='#',
        delimiters='=',
        empty_lines_in_values=False,
        interpolation=None,
        strict=False,
    )
    # Do not make keys lowercase
    cp.optionxform = lambda option: option  # type: ignore

    read = cp.read(filename)
    if not read:
        raise OSError(f'Failed to read {filename}')

    for section_name, section in cp.items():
        for key, value in section.items():
            if item := CONFIGFILE_ITEMS.get(f'{section_name}/{key}'):
                item.apply_config(namespace, section_name, key, value)
            else:
                logger.warning(f'Unknown config setting [{section_name}] {key}=')


def config_example() -> Iterator[str]:
    prev_section: Optional[str] = None
    for item in CONFIG_ITEMS:
        section, key, value = item.config_example()
        if section:
            if prev_section != section:
                if prev_section:
                    yield ''
                yield f'[{section}]'
                prev_section = section
            yield f'{key} = {value}'


class PagerHelpAction(argparse._HelpAction):  # pylint: disable=protected-access
    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Union[str, Sequence[Any], None] = None,
        option_string: Optional[str] = None,
    ) -> None:
        page(parser.format_help(), True)
        parser.exit()


def create_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description='Provision and enforce a Secure Boot chain for GRUB',
        usage='\n  '
        + textwrap.dedent("""\
          sbgrub {b}install{e} [grub-install arguments…] [options…]
            sbgrub {b}kernel-hook{e} VERSION [IMAGE] [options…]
            sbgrub {b}sign-all{e} [options…]
            sbgrub {b}genkey{e} [--owner=NAME] [--email=ADDRESS] [options…]
            sbgrub {b}verify{e} [options…]
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        add_help=False,
        epilog='\n  '.join(('config file:', *config_example())),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    for item in CONFIG_ITEMS:
        item.add_to(p)

    # Suppress printing of usage synopsis on errors
    p.error = lambda message: p.exit(2, f'{p.prog}: error: {message}\n')  # type: ignore

    # Make --help paged
    p.add_argument(
        '-h', '--help',
        action=PagerHelpAction,
        help='show this help message and exit',
    )  # fmt: skip

    return p


def finalize_options(opts: argparse.Namespace) -> None:
    if not opts.positional:
        raise ValueError(f'A verb is required, one of: {", ".join(VERBS)}')

    opts.verb, *opts.arguments = opts.positional
    if opts.verb not in VERBS:
        raise ValueError(f'Unknown verb {opts.verb!r}, expected one of: {", ".join(VERBS)}')

    if opts.verb == 'kernel-hook' and not 1 <= len(opts.arguments) <= 2:
        raise ValueError('kernel-hook expects VERSION [IMAGE]')
    if opts.verb not in ('install', 'kernel-hook') and opts.arguments:
        raise ValueError(f'Unexpected arguments for {opts.verb}: {" ".join(opts.arguments)}')

    for key, value in DEFAULTS.items():
        if getattr(opts, key) is None:
            setattr(opts, key, value)

    if opts.efi_arch in (None, 'auto'):
        opts.efi_arch = guess_efi_arch()

    if opts.common_name is None:
        opts.common_name = f'sbgrub on {socket.getfqdn()}'

    if not opts.modules:
        opts.modules = list(DEFAULT_MODULES)
    else:
        # --modules=a,b and --modules='a b' both work
        opts.modules = [m for item in opts.modules for m in item.replace(',', ' ').split()]

    if not opts.kernel_patterns:
        opts.kernel_patterns = list(DEFAULT_KERNEL_PATTERNS)

    opts.tools = opts.tools or []
    if not opts.vendor_dirs:
        distributor = distributor_id()
        opts.vendor_dirs = [opts.efi_dir / 'EFI' / distributor] if distributor else []

    # Validates the name
    SignTool.from_string(opts.signtool)


def parse_args(args: Optional[list[str]] = None) -> argparse.Namespace:
    p = create_parser()
    opts, extra = p.parse_known_args(args)
    # Unknown options are only accepted as grub-install arguments
    if extra and (not opts.positional or opts.positional[0] != 'install'):
        raise ValueError(f'Unrecognized arguments: {" ".join(extra)}')
    opts.positional += extra
    apply_config(opts)
    finalize_options(opts)
    return opts


def mode_from(verb: str, environ: Mapping[str, str]) -> Mode:
    if verb == 'install':
        return Mode.FULL_INSTALL
    if verb == 'sign-all':
        return Mode.SIGN_ALL
    if verb == 'genkey':
        return Mode.GENKEY
    if verb == 'verify':
        return Mode.VERIFY

    assert verb == 'kernel-hook'
    hook = environ.get('SBGRUB_HOOK', 'postinst')
    if hook == 'postrm':
        return Mode.KERNEL_REMOVED
    if hook != 'postinst':
        raise ValueError(f'Invalid SBGRUB_HOOK={hook!r}, expected postinst or postrm')
    if parse_boolean(environ.get('SBGRUB_SIGN_ALL', 'no')):
        return Mode.SIGN_ALL
    return Mode.ROUTINE_RESIGN


@dataclasses.dataclass(frozen=True)
class RunContext:
    """Everything a run needs, resolved once at startup and never changed."""

    mode: Mode
    kernel: KernelRequest
    installer_args: tuple[str, ...]
    keystore: Path
    owner: Optional[str]
    email: Optional[str]
    common_name: str
    force: bool
    efi_arch: str
    platform: str
    grub_lib_dir: Path
    font: Optional[Path]
    locale_dir: Optional[Path]
    modules: tuple[str, ...]
    config_source: Optional[Path]
    signtool: str
    upstream_keyring: Optional[Path]
    require_upstream_signature: bool
    boot_dir: Path
    efi_dir: Path
    bootloader_id: str
    label: str
    vendor_dirs: tuple[Path, ...]
    kernel_patterns: tuple[str, ...]
    fallback_installer: Path
    tools: tuple[Path, ...]

    @classmethod
    def from_options(cls, opts: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> 'RunContext':
        if environ is None:
            environ = os.environ

        mode = mode_from(opts.verb, environ)

        kernel = KernelRequest()
        installer_args: tuple[str, ...] = ()
        if opts.verb == 'kernel-hook':
            version, *rest = opts.arguments
            image = Path(rest[0]) if rest else None
            if override := environ.get('SBGRUB_KERNEL'):
                image = Path(override)
            kernel = KernelRequest(version, image)
        elif opts.verb == 'install':
            installer_args = tuple(opts.arguments)

        if opts.efi_arch not in GRUB_PLATFORMS:
            raise ValueError(f'Unsupported EFI architecture {opts.efi_arch!r}')

        return cls(
            mode=mode,
            kernel=kernel,
            installer_args=installer_args,
            keystore=opts.keystore,
            owner=opts.owner,
            email=opts.email,
            common_name=opts.common_name,
            force=opts.force,
            efi_arch=opts.efi_arch,
            platform=grub_platform(opts.efi_arch),
            grub_lib_dir=opts.grub_lib_dir,
            font=opts.font,
            locale_dir=opts.locale_dir,
            modules=tuple(opts.modules),
            config_source=opts.config_source,
            signtool=opts.signtool,
            upstream_keyring=opts.upstream_keyring,
            require_upstream_signature=opts.require_upstream_signature,
            boot_dir=opts.boot_dir,
            efi_dir=opts.efi_dir,
            bootloader_id=opts.bootloader_id,
            label=opts.label,
            vendor_dirs=tuple(opts.vendor_dirs),
            kernel_patterns=tuple(opts.kernel_patterns),
            fallback_installer=opts.fallback_installer,
            tools=tuple(opts.tools),
        )
