# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name

import shutil
import sys
import tempfile
from pathlib import Path

import pytest

from sbgrub.gpg import KEY_LABEL, Keyring


@pytest.fixture(scope='module')
def keyring():
    if shutil.which('gpg') is None:
        pytest.skip('gpg not available')

    # The agent socket path must stay short
    home = Path(tempfile.mkdtemp(prefix='sbgrub-gpg', dir='/tmp'))
    keyring = Keyring(home / 'gnupg')
    keyring.create()

    passphrase = home / 'passphrase'
    passphrase.write_text('secret')
    keyring.fpr = keyring.generate_key('Test Owner', 'owner@example.com', passphrase)
    keyring.passphrase = passphrase
    keyring.kill_agent()

    yield keyring

    keyring.kill_agent()
    shutil.rmtree(home)


def test_create(keyring):
    assert (keyring.home / 'gpg-agent.conf').read_text().startswith('allow-loopback-pinentry')
    assert keyring.home.stat().st_mode & 0o077 == 0

def test_fingerprint(keyring):
    assert len(keyring.fpr) == 40
    assert keyring.fingerprint() == keyring.fpr
    assert keyring.fingerprint(f'not-{KEY_LABEL}') is None

def test_detach_sign_and_verify(keyring, tmp_path):
    path = tmp_path / 'grub.cfg'
    path.write_text('set check_signatures=enforce\n')

    sig = keyring.detach_sign(keyring.fpr, path, keyring.passphrase)
    assert sig == tmp_path / 'grub.cfg.sig'
    assert keyring.verify(path, sig)

    path.write_text('set check_signatures=no\n')
    assert not keyring.verify(path, sig)

def test_trial_sign(keyring, tmp_path):
    assert keyring.trial_sign(keyring.fpr, keyring.passphrase)

    keyring.kill_agent()
    wrong = tmp_path / 'wrong'
    wrong.write_text('not the passphrase')
    assert not keyring.trial_sign(keyring.fpr, wrong)

def test_export_public_key(keyring, tmp_path):
    out = keyring.export_public_key(keyring.fpr, tmp_path / 'pubkey.gpg')
    assert out.stat().st_size > 0

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
