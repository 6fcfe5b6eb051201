# SPDX-License-Identifier: LGPL-2.1-or-later

"""OpenPGP keyring used for the detached signatures GRUB checks at boot.

All operations run gpg in batch mode against a private home directory.
Passphrases are never put on a command line, only handed over in a file
(see sbgrub.vault).
"""

import logging
import os
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Union

from sbgrub.util import find_tool, run, temporary_umask

logger = logging.getLogger(__name__)

# Comment part of the user id, used to find our key in the keyring.
KEY_LABEL = 'sbgrub'

AGENT_CONF = '''\
allow-loopback-pinentry
default-cache-ttl 0
max-cache-ttl 0
'''


class Keyring:
    def __init__(self, home: Optional[Path], tools: Sequence[Path] = ()):
        self.home = home
        self.tools = tools

    def _gpg(self) -> list[Union[str, Path]]:
        tool = find_tool('gpg', tools=self.tools, msg='gpg, required for detached signatures, is not installed')
        cmd: list[Union[str, Path]] = [tool, '--batch', '--no-tty']
        if self.home is not None:
            cmd += ['--homedir', self.home]
        return cmd

    @staticmethod
    def _passphrase_args(passphrase_file: Optional[Path]) -> list[Union[str, Path]]:
        if passphrase_file is None:
            return ['--pinentry-mode', 'loopback', '--passphrase', '']
        return ['--pinentry-mode', 'loopback', '--passphrase-file', passphrase_file]

    def create(self) -> None:
        assert self.home is not None

        with temporary_umask(0o077):
            self.home.mkdir(mode=0o700, parents=True, exist_ok=True)
            (self.home / 'gpg-agent.conf').write_text(AGENT_CONF)

    def generate_key(self, owner: str, email: str, passphrase_file: Optional[Path]) -> str:
        uid = f'{owner} ({KEY_LABEL}) <{email}>'
        cmd = [
            *self._gpg(),
            *self._passphrase_args(passphrase_file),
            '--quick-generate-key', uid,
            'rsa4096', 'sign', 'never',
        ]  # fmt: skip
        run(cmd, check=True)

        fpr = self.fingerprint()
        if fpr is None:
            raise ValueError(f'Generated key {uid!r} not found in keyring')
        return fpr

    def fingerprint(self, label: str = KEY_LABEL) -> Optional[str]:
        cmd = [*self._gpg(), '--with-colons', '--list-secret-keys', f'({label})']
        proc = run(cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True)
        if proc.returncode != 0:
            return None

        # The first fpr record after the sec record is the primary key's fingerprint.
        seen_sec = False
        for line in proc.stdout.splitlines():
            fields = line.split(':')
            if fields[0] == 'sec':
                seen_sec = True
            elif fields[0] == 'fpr' and seen_sec:
                return fields[9]
        return None

    def export_public_key(self, fpr: str, output: Path) -> Path:
        cmd = [*self._gpg(), '--yes', '--output', output, '--export', fpr]
        run(cmd, check=True)
        if not output.exists() or output.stat().st_size == 0:
            raise ValueError(f'Exporting public key {fpr} produced no output')
        return output

    def detach_sign(self, fpr: str, path: Path, passphrase_file: Optional[Path]) -> Path:
        sig = path.with_name(path.name + '.sig')
        cmd = [
            *self._gpg(),
            *self._passphrase_args(passphrase_file),
            '--yes',
            '--local-user', fpr,
            '--detach-sign',
            '--output', sig,
            path,
        ]  # fmt: skip
        run(cmd, check=True, stdout=subprocess.DEVNULL)
        return sig

    def trial_sign(self, fpr: str, passphrase_file: Optional[Path]) -> bool:
        """Sign empty input and throw the result away. Returns False on a wrong passphrase."""
        cmd = [
            *self._gpg(),
            *self._passphrase_args(passphrase_file),
            '--local-user', fpr,
            '--detach-sign',
            '--output', '-',
        ]  # fmt: skip
        proc = run(cmd, input=b'', stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        return proc.returncode == 0

    def verify(self, path: Path, sig: Path, keyring: Optional[Path] = None) -> bool:
        cmd = self._gpg()
        if keyring is not None:
            cmd += ['--no-default-keyring', '--keyring', keyring]
        cmd += ['--verify', sig, path]
        proc = run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        return proc.returncode == 0

    def kill_agent(self) -> None:
        if self.home is None or not self.home.exists():
            return

        try:
            tool = find_tool('gpgconf', tools=self.tools)
        except ValueError:
            return
        run([tool, '--homedir', self.home, '--kill', 'gpg-agent'],
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
            env={**os.environ, 'GNUPGHOME': str(self.home)})
