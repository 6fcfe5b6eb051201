# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=import-outside-toplevel

import contextlib
import dataclasses
import enum
import getpass
import logging
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from sbgrub.errors import PassphraseMismatch, SigningError
from sbgrub.gpg import Keyring
from sbgrub.keystore import SigningIdentity
from sbgrub.util import scrub_file, temporary_umask, warn

logger = logging.getLogger(__name__)


class VaultState(enum.Enum):
    PROMPTING = 'prompting'
    VERIFYING = 'verifying'
    CONFIRMED = 'confirmed'
    ABORTED = 'aborted'


class Prompter:
    def ask_passphrase(self, prompt: str) -> str:
        raise NotImplementedError()

    def confirm_retry(self) -> bool:
        raise NotImplementedError()

    def confirm(self, question: str) -> bool:
        raise NotImplementedError()


class TerminalPrompter(Prompter):
    def ask_passphrase(self, prompt: str) -> str:
        return getpass.getpass(prompt)

    def confirm(self, question: str) -> bool:
        if not sys.stdin.isatty():
            return False
        answer = input(f'{question} [y/N] ')
        return answer.strip().lower() in {'y', 'yes'}

    def confirm_retry(self) -> bool:
        return self.confirm('Passphrase incorrect. Try again?')


@dataclasses.dataclass(frozen=True)
class UnlockedKey:
    identity: SigningIdentity
    passphrase_file: Optional[Path]
    db_key: Path

    @property
    def fingerprint(self) -> str:
        return self.identity.fingerprint

    @property
    def db_cert(self) -> Path:
        return self.identity.db_cert


def decrypt_private_key(path: Path, passphrase: Optional[str]) -> Optional[bytes]:
    """Return the key as unencrypted PEM, or None if the passphrase does not fit."""
    from cryptography.hazmat.primitives import serialization

    try:
        key = serialization.load_pem_private_key(
            path.read_bytes(),
            password=passphrase.encode() if passphrase else None,
        )
    except (ValueError, TypeError):
        return None

    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


class PassphraseVault:
    """Collects the passphrase once per run and proves it before any bulk signing.

    The passphrase is checked with one trial signature over empty input and by
    decrypting the signature database key. Only then is an UnlockedKey handed
    out; it lives in a private temporary directory that is wiped when the
    context is left.
    """

    def __init__(self, prompter: Prompter, keyring: Keyring):
        self.prompter = prompter
        self.keyring = keyring
        self.state = VaultState.PROMPTING
        self.transitions: list[VaultState] = []
        self.attempts = 0

    def _enter(self, state: VaultState) -> None:
        self.state = state
        self.transitions += [state]

    def _verify(self, identity: SigningIdentity, passphrase: Optional[str], tmp: Path) -> Optional[UnlockedKey]:
        passphrase_file = None
        if passphrase:
            passphrase_file = tmp / 'passphrase'
            with temporary_umask(0o077):
                passphrase_file.write_text(passphrase)

        db_pem = None
        if self.keyring.trial_sign(identity.fingerprint, passphrase_file):
            db_pem = decrypt_private_key(identity.db_key, passphrase)

        if db_pem is None:
            if passphrase_file is not None:
                scrub_file(passphrase_file)
            return None

        db_key = tmp / 'db.key'
        with temporary_umask(0o077):
            db_key.write_bytes(db_pem)
        return UnlockedKey(identity, passphrase_file, db_key)

    def _collect(self, identity: SigningIdentity, tmp: Path) -> UnlockedKey:
        while True:
            self._enter(VaultState.PROMPTING)
            self.attempts += 1
            passphrase = None
            if identity.passphrase_protected:
                passphrase = self.prompter.ask_passphrase(f'Passphrase for signing key {identity.fingerprint}: ')

            self._enter(VaultState.VERIFYING)
            unlocked = self._verify(identity, passphrase, tmp)
            del passphrase
            if unlocked is not None:
                self._enter(VaultState.CONFIRMED)
                return unlocked

            if not identity.passphrase_protected:
                self._enter(VaultState.ABORTED)
                raise SigningError(f'Trial signature with unprotected key {identity.fingerprint} failed')

            warn('The passphrase does not unlock the signing keys.')
            if not self.prompter.confirm_retry():
                self._enter(VaultState.ABORTED)
                raise PassphraseMismatch(f'Passphrase for signing key {identity.fingerprint} not confirmed')

    @contextlib.contextmanager
    def unlock(self, identity: SigningIdentity) -> Iterator[UnlockedKey]:
        with tempfile.TemporaryDirectory(prefix='sbgrub-vault') as tmp:
            unlocked = None
            try:
                unlocked = self._collect(identity, Path(tmp))
                logger.info(f'Signing key {identity.fingerprint} unlocked')
                yield unlocked
            finally:
                if unlocked is not None:
                    if unlocked.passphrase_file is not None:
                        scrub_file(unlocked.passphrase_file)
                    scrub_file(unlocked.db_key)
                self.keyring.kill_agent()
