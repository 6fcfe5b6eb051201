# SPDX-License-Identifier: LGPL-2.1-or-later
#
# This file is part of sbgrub.
#
# sbgrub is free software; you can redistribute it and/or modify it
# under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 2.1 of the License, or
# (at your option) any later version.
#
# sbgrub is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with sbgrub; If not, see <https://www.gnu.org/licenses/>.

import dataclasses
import enum
import logging
import os
import pprint
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Callable, Optional

import pefile  # type: ignore

from sbgrub.boot import BootManager, DeviceResolver, TrustEnforcer
from sbgrub.config import Mode, RunContext, parse_args
from sbgrub.errors import KeyGenerationError, PassphraseMismatch, PrivilegeError, SbgrubError
from sbgrub.gpg import Keyring
from sbgrub.image import ImageAssembler, ImageBuilder, StagingTree
from sbgrub.keystore import CertificateRole, KeyStore, SigningIdentity, generate_identity, load_identity
from sbgrub.sign import (
    SignTool,
    Signer,
    find_kernel_artifacts,
    pe_has_signature,
    remove_artifact,
    remove_orphaned_signatures,
    signature_path,
)
from sbgrub.util import Style, interruptible, phase, run, warn
from sbgrub.vault import PassphraseVault, Prompter, TerminalPrompter, UnlockedKey

logger = logging.getLogger(__name__)


class RunState(enum.Enum):
    NO_IDENTITY = 'no-identity'
    IDENTITY_READY = 'identity-ready'
    IMAGE_BUILT = 'image-built'
    IMAGE_SIGNED = 'image-signed'
    INSTALLED = 'installed'


def run_fallback(installer: Path, args: Sequence[str]) -> int:
    if not installer.exists():
        raise SbgrubError(f'Fallback installer {installer} does not exist')
    return run([installer, *args]).returncode


def check_privileges() -> None:
    if os.geteuid() != 0:
        raise PrivilegeError('sbgrub must be run as root')


class Orchestrator:
    def __init__(
        self,
        ctx: RunContext,
        prompter: Optional[Prompter] = None,
        keyring: Optional[Keyring] = None,
        builder: Optional[ImageBuilder] = None,
        signtool: Optional[type[SignTool]] = None,
        manager: Optional[BootManager] = None,
        resolver: Optional[DeviceResolver] = None,
        fallback: Callable[[Path, Sequence[str]], int] = run_fallback,
    ):
        self.ctx = ctx
        self.store = KeyStore(ctx.keystore)
        self.prompter = prompter or TerminalPrompter()
        self.keyring = keyring or Keyring(self.store.gnupg, tools=ctx.tools)
        self.builder = builder or ImageBuilder(ctx.tools)
        self.signtool = signtool or SignTool.from_string(ctx.signtool)
        self.fallback = fallback
        self.enforcer = TrustEnforcer(
            efi_dir=ctx.efi_dir,
            boot_dir=ctx.boot_dir,
            efi_arch=ctx.efi_arch,
            platform=ctx.platform,
            bootloader_id=ctx.bootloader_id,
            label=ctx.label,
            vendor_dirs=ctx.vendor_dirs,
            manager=manager or BootManager(ctx.tools),
            resolver=resolver or DeviceResolver(ctx.tools),
        )
        self.states = [RunState.NO_IDENTITY]

    @property
    def state(self) -> RunState:
        return self.states[-1]

    def _enter(self, state: RunState) -> None:
        logger.debug(f'Run state {self.state.value} → {state.value}')
        self.states += [state]

    def identity(self) -> Optional[SigningIdentity]:
        identity = load_identity(self.store, self.keyring)
        if identity is not None:
            self._enter(RunState.IDENTITY_READY)
        return identity

    def signer(self, unlocked: UnlockedKey) -> Signer:
        return Signer(
            unlocked,
            self.keyring,
            signtool=self.signtool,
            tools=self.ctx.tools,
            upstream_keyring=self.ctx.upstream_keyring,
            require_upstream_signature=self.ctx.require_upstream_signature,
        )

    def run(self) -> int:
        mode = self.ctx.mode
        if mode is Mode.GENKEY:
            return self.genkey()
        if mode is Mode.VERIFY:
            return self.verify()

        identity = self.identity()
        if identity is None:
            if mode is Mode.FULL_INSTALL:
                warn(f'No signing identity in {self.store.directory}, running {self.ctx.fallback_installer}.')
                return self.fallback(self.ctx.fallback_installer, self.ctx.installer_args)
            warn(f'No signing identity in {self.store.directory}, nothing to do. Run "sbgrub genkey" first.')
            return 0

        if mode is Mode.ROUTINE_RESIGN:
            self.routine_resign(identity)
        elif mode is Mode.KERNEL_REMOVED:
            self.kernel_removed()
        else:
            self.sign_all(identity)
        return 0

    def routine_resign(self, identity: SigningIdentity) -> None:
        vault = PassphraseVault(self.prompter, self.keyring)
        with vault.unlock(identity) as unlocked:
            self.signer(unlocked).resign_kernel(self.ctx.kernel, self.ctx.boot_dir, self.ctx.kernel_patterns)

    def kernel_removed(self) -> None:
        version = self.ctx.kernel.effective_version
        phase(f'Removing signatures of kernel {version}')
        if version:
            for pattern in self.ctx.kernel_patterns:
                remove_artifact(self.ctx.boot_dir / pattern.replace('*', version, 1))
        if self.ctx.kernel.image is not None and self.ctx.kernel.image.parent == self.ctx.boot_dir:
            remove_artifact(self.ctx.kernel.image)
        remove_orphaned_signatures(self.ctx.boot_dir, self.ctx.kernel_patterns)

    def sign_all(self, identity: SigningIdentity) -> None:
        assembler = ImageAssembler(
            self.ctx.platform,
            self.ctx.grub_lib_dir,
            self.ctx.modules,
            font=self.ctx.font,
            locale_dir=self.ctx.locale_dir,
            config_source=self.ctx.config_source,
            builder=self.builder,
        )
        # Fail before asking for the passphrase if the image cannot be built.
        assembler.check_modules()

        vault = PassphraseVault(self.prompter, self.keyring)
        with vault.unlock(identity) as unlocked:
            signer = self.signer(unlocked)
            if self.ctx.kernel.image is not None:
                signer.resign_kernel(self.ctx.kernel, self.ctx.boot_dir, self.ctx.kernel_patterns)
            signer.sign_kernels(self.ctx.boot_dir, self.ctx.kernel_patterns)

            with StagingTree() as staging:
                self.keyring.export_public_key(identity.fingerprint, staging.pubkey)
                image = assembler.assemble(staging, staging.pubkey, signer)
                self._enter(RunState.IMAGE_BUILT)

                signer.embed_sign(image.path)
                self._enter(RunState.IMAGE_SIGNED)

                self.enforcer.install(image)
                self._enter(RunState.INSTALLED)

    def ask_new_passphrase(self) -> Optional[str]:
        passphrase = self.prompter.ask_passphrase('Passphrase for the new signing keys (empty for none): ')
        if passphrase and self.prompter.ask_passphrase('Repeat passphrase: ') != passphrase:
            raise PassphraseMismatch('Passphrases do not match')
        return passphrase or None

    def genkey(self) -> int:
        if not self.ctx.owner or not self.ctx.email:
            raise ValueError('genkey needs --owner= and --email=')

        overwrite = self.ctx.force
        if self.store.exists() and not overwrite:
            overwrite = self.prompter.confirm(
                f'Replace the signing identity in {self.store.directory}? '
                'Kernels and the boot image must be signed again.'
            )
            if not overwrite:
                raise KeyGenerationError(f'Keeping the signing identity in {self.store.directory}')

        passphrase = self.ask_new_passphrase()
        generate_identity(
            self.store,
            self.ctx.owner,
            self.ctx.email,
            self.ctx.common_name,
            passphrase,
            keyring=self.keyring,
            overwrite=overwrite,
        )
        self._enter(RunState.IDENTITY_READY)

        auth = ' '.join(str(self.store.auth(role)) for role in CertificateRole)
        logger.info(f'Enroll {auth} in the firmware, then run "sbgrub sign-all".')
        return 0

    def verify(self) -> int:
        if load_identity(self.store, self.keyring) is None:
            warn(f'No signing identity in {self.store.directory}, nothing can be verified.')
            return 1

        unsigned = 0
        for path in find_kernel_artifacts(self.ctx.boot_dir, self.ctx.kernel_patterns):
            sig = signature_path(path)
            ok = sig.exists() and self.keyring.verify(path, sig)
            print(f'{"signed" if ok else "UNSIGNED":>9} {path}')
            unsigned += not ok

        image = self.enforcer.image_path
        try:
            ok = image.exists() and pe_has_signature(image)
        except pefile.PEFormatError:
            ok = False
        print(f'{"signed" if ok else "UNSIGNED":>9} {image}')
        unsigned += not ok

        if unsigned:
            warn(f'{unsigned} boot file(s) without valid signature.')
            return 1
        return 0


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(format='%(message)s', level=logging.INFO)

    try:
        opts = parse_args(argv)
        logging.getLogger().setLevel(opts.log_level.upper())
        ctx = RunContext.from_options(opts)

        if opts.summary:
            pprint.pprint(dataclasses.asdict(ctx))
            return 0

        check_privileges()
        with interruptible():
            return Orchestrator(ctx).run()
    except (SbgrubError, ValueError, subprocess.CalledProcessError) as e:
        logger.error(f'{Style.red}error:{Style.reset} {e}')
        return 1
    except KeyboardInterrupt:
        logger.error(f'{Style.red}error:{Style.reset} interrupted')
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
