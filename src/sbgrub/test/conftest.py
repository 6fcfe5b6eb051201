# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name,unused-argument

import hashlib
import shutil
import subprocess
import tarfile
from pathlib import Path

import pytest

from sbgrub.boot import BootEntry
from sbgrub.keystore import KeyStore, generate_identity
from sbgrub.sign import SignTool

PASSPHRASE = 'correct horse battery staple'
FINGERPRINT = '0123456789ABCDEF0123456789ABCDEF01234567'


def digest(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class FakeKeyring:
    """Stands in for gpg. Signatures are '<signer>:<sha256 of the file>'."""

    def __init__(self, home, corrupt=False):
        self.home = home
        self.corrupt = corrupt
        self.events = []
        self.agent_kills = 0

    def create(self):
        self.home.mkdir(mode=0o700, parents=True, exist_ok=True)

    def generate_key(self, owner, email, passphrase_file):
        (self.home / 'fpr').write_text(FINGERPRINT)
        (self.home / 'passphrase').write_text(passphrase_file.read_text() if passphrase_file else '')
        return FINGERPRINT

    def fingerprint(self, label='sbgrub'):
        fpr = self.home / 'fpr'
        return fpr.read_text() if fpr.exists() else None

    def export_public_key(self, fpr, output):
        output.write_text(f'public key {fpr}')
        return output

    def trial_sign(self, fpr, passphrase_file):
        given = passphrase_file.read_text() if passphrase_file else ''
        ok = given == (self.home / 'passphrase').read_text()
        self.events += [('trial', ok)]
        return ok

    def detach_sign(self, fpr, path, passphrase_file):
        sig = path.with_name(path.name + '.sig')
        sig.write_text(f'{fpr}:{"bad" if self.corrupt else digest(path)}')
        self.events += [('sign', path)]
        return sig

    def verify(self, path, sig, keyring=None):
        signer, _, value = sig.read_text().partition(':')
        return value == digest(path)

    def kill_agent(self):
        self.agent_kills += 1


class FakeImageBuilder:
    def __init__(self):
        self.modules = None
        self.members = None
        self.configs = 0

    def make_config(self, output):
        self.configs += 1
        output.write_text('menuentry "Linux" {\n  linux /vmlinuz\n}\n')

    def make_image(self, moddir, platform, memdisk, pubkey, modules, output):
        assert pubkey.exists()
        with tarfile.open(memdisk) as tar:
            self.members = sorted(m.name for m in tar.getmembers() if m.isfile())
        self.modules = list(modules)
        output.write_bytes(b'MZ' + ' '.join(modules).encode())


def make_signtool(failures):
    """A SignTool failing <failures> times before it succeeds."""

    class FlakySignTool(SignTool):
        calls = 0

        @staticmethod
        def sign(input_f, output_f, key, cert, tools=()):
            FlakySignTool.calls += 1
            if FlakySignTool.calls <= failures:
                raise subprocess.CalledProcessError(1, ['sbsign'])
            shutil.copyfile(input_f, output_f)

        @staticmethod
        def is_signed(path):
            return True

    return FlakySignTool


class FakeBootManager:
    def __init__(self, entries=()):
        self.entries = list(entries)
        self.created = []

    def list(self):
        return list(self.entries)

    def delete(self, number):
        self.entries = [e for e in self.entries if e.number != number]

    def create(self, disk, partition, label, loader):
        number = f'{len(self.entries) + 10:04X}'
        entry = BootEntry(number, label, loader)
        self.entries += [entry]
        self.created += [(disk, partition, label, loader)]
        return entry


class FakeResolver:
    def resolve(self, mountpoint):
        return '/dev/vda', 1


class ScriptedPrompter:
    def __init__(self, passphrases=(), retries=(), confirm=False):
        self.passphrases = list(passphrases)
        self.retries = list(retries)
        self.answer = confirm
        self.retry_prompts = 0

    def ask_passphrase(self, prompt):
        return self.passphrases.pop(0)

    def confirm_retry(self):
        self.retry_prompts += 1
        return self.retries.pop(0)

    def confirm(self, question):
        return self.answer


@pytest.fixture(scope='session')
def identity_store(tmp_path_factory):
    root = tmp_path_factory.mktemp('identity')
    store = KeyStore(root / 'keys')
    generate_identity(
        store,
        'Test Owner',
        'owner@example.com',
        'sbgrub test',
        PASSPHRASE,
        keyring=FakeKeyring(store.gnupg),
        entropy_root=root,
    )
    return store


@pytest.fixture
def grub_lib_dir(tmp_path):
    moddir = tmp_path / 'grub' / 'x86_64-efi'
    moddir.mkdir(parents=True)
    for name in ('pgp', 'gcry_rsa', 'gcry_sha256', 'gcry_sha512', 'memdisk', 'tar',
                 'linux', 'normal', 'part_gpt', 'not_in_policy'):
        (moddir / f'{name}.mod').write_bytes(b'\x7fELF')
    (moddir / 'moddep.lst').write_text('linux: boot\n')
    (moddir / 'core.efi').write_bytes(b'MZ')
    (moddir / 'load.cfg').write_text('set prefix=(hd0)\n')
    return tmp_path / 'grub'
