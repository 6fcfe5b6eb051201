# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name,import-outside-toplevel

import datetime
import logging
import struct
import sys
import uuid

import pytest
from conftest import PASSPHRASE, FakeKeyring

from sbgrub.errors import KeyGenerationError
from sbgrub.keystore import (
    AUTH_ATTRIBUTES,
    EFI_CERT_X509_GUID,
    EFI_GLOBAL_VARIABLE,
    EntropyHelper,
    CertificateRole,
    KeyStore,
    efi_time,
    generate_identity,
    generate_key_cert_pair,
    load_identity,
    parse_authenticated_update,
    role_common_name,
    signature_list,
)


def signer_certificates(p7):
    from cryptography.hazmat.primitives.serialization import pkcs7

    return pkcs7.load_der_pkcs7_certificates(p7)


def load_cert(path):
    from cryptography import x509

    return x509.load_pem_x509_certificate(path.read_bytes())


def test_role_common_name():
    assert role_common_name('host', CertificateRole.PLATFORM) == 'host Platform Key'
    cn = role_common_name('x' * 80, CertificateRole.SIGNATURE_DATABASE)
    assert len(cn) == 64
    assert cn.endswith('...')

def test_key_cert_pair():
    from cryptography import x509

    key, cert = generate_key_cert_pair('sbgrub test Platform Key')
    assert key.key_size == 2048
    assert cert.issuer == cert.subject
    bc = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    assert bc.critical and not bc.value.ca
    ku = cert.extensions.get_extension_for_class(x509.KeyUsage)
    assert ku.critical and ku.value.digital_signature
    eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
    assert x509.oid.ExtendedKeyUsageOID.CODE_SIGNING in eku.value

def test_signature_list_layout():
    owner = uuid.uuid4()
    der = b'\x30\x82' + b'c' * 100
    esl = signature_list(der, owner)

    sig_type, list_size, header_size, sig_size = struct.unpack_from('<16sIII', esl)
    assert uuid.UUID(bytes_le=sig_type) == EFI_CERT_X509_GUID
    assert list_size == len(esl) == 28 + 16 + len(der)
    assert header_size == 0
    assert sig_size == 16 + len(der)
    assert uuid.UUID(bytes_le=esl[28:44]) == owner
    assert esl[44:] == der

def test_efi_time():
    when = datetime.datetime(2024, 2, 29, 13, 14, 15, tzinfo=datetime.timezone.utc)
    t = efi_time(when)
    assert len(t) == 16
    assert struct.unpack('<HBBBBBBIhBB', t) == (2024, 2, 29, 13, 14, 15, 0, 0, 0, 0, 0)

def test_generated_store(identity_store):
    for role in CertificateRole:
        for path in (identity_store.key(role), identity_store.cert(role), identity_store.der(role),
                     identity_store.esl(role), identity_store.auth(role)):
            assert path.exists(), path
        assert identity_store.key(role).stat().st_mode & 0o077 == 0
        assert b'ENCRYPTED' in identity_store.key(role).read_bytes()
    assert identity_store.pk_removal.exists()

    guid = identity_store.guid()
    for role in CertificateRole:
        esl = identity_store.esl(role).read_bytes()
        assert uuid.UUID(bytes_le=esl[28:44]) == guid
        assert esl[44:] == identity_store.der(role).read_bytes()

def test_updates_are_signed_by_platform_key(identity_store):
    pk = load_cert(identity_store.cert(CertificateRole.PLATFORM))

    for role in CertificateRole:
        _, p7, data = parse_authenticated_update(identity_store.auth(role).read_bytes())
        assert signer_certificates(p7) == [pk]
        assert data == identity_store.esl(role).read_bytes()

    _, p7, data = parse_authenticated_update(identity_store.pk_removal.read_bytes())
    assert signer_certificates(p7) == [pk]
    assert data == b''

def test_auth_signature_verifies(identity_store):
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import padding

    pk = load_cert(identity_store.cert(CertificateRole.PLATFORM))
    role = CertificateRole.SIGNATURE_DATABASE
    time, p7, data = parse_authenticated_update(identity_store.auth(role).read_bytes())
    signed = (role.variable.encode('utf-16-le') + role.vendor_guid.bytes_le
              + struct.pack('<I', AUTH_ATTRIBUTES) + time + data)

    # With NoAttributes the RSA signature is the last 256 bytes of the SignerInfo.
    signature = p7[-256:]
    pk.public_key().verify(signature, signed, padding.PKCS1v15(), hashes.SHA256())

def test_load_identity(identity_store):
    identity = load_identity(identity_store, FakeKeyring(identity_store.gnupg))
    assert identity is not None
    assert identity.guid == identity_store.guid()
    assert identity.passphrase_protected
    assert identity.db_key == identity_store.key(CertificateRole.SIGNATURE_DATABASE)

def test_load_identity_incomplete(tmp_path):
    store = KeyStore(tmp_path / 'keys')
    assert load_identity(store, FakeKeyring(store.gnupg)) is None

def test_refuse_overwrite(identity_store):
    before = identity_store.guid()
    with pytest.raises(KeyGenerationError):
        generate_identity(identity_store, 'Other', 'other@example.com', 'other', PASSPHRASE,
                          keyring=FakeKeyring(identity_store.gnupg))
    assert identity_store.guid() == before

def test_regeneration(tmp_path):
    store = KeyStore(tmp_path / 'keys')
    first = generate_identity(store, 'Owner', 'owner@example.com', 'first', None,
                              keyring=FakeKeyring(store.gnupg), entropy_root=tmp_path)
    old_pk = load_cert(store.cert(CertificateRole.PLATFORM))

    second = generate_identity(store, 'Owner', 'owner@example.com', 'second', None,
                               keyring=FakeKeyring(store.gnupg), overwrite=True, entropy_root=tmp_path)
    new_pk = load_cert(store.cert(CertificateRole.PLATFORM))

    assert first.guid != second.guid
    assert store.guid() == second.guid
    assert old_pk != new_pk
    for role in (CertificateRole.KEY_EXCHANGE, CertificateRole.SIGNATURE_DATABASE):
        _, p7, _ = parse_authenticated_update(store.auth(role).read_bytes())
        assert signer_certificates(p7) == [new_pk]

def test_unencrypted_warning(tmp_path, caplog):
    store = KeyStore(tmp_path / 'keys')
    with caplog.at_level(logging.WARNING):
        identity = generate_identity(store, 'Owner', 'owner@example.com', 'plain', None,
                                     keyring=FakeKeyring(store.gnupg), entropy_root=tmp_path)
    assert 'unencrypted' in caplog.text
    assert not identity.passphrase_protected
    assert b'ENCRYPTED' not in store.key(CertificateRole.PLATFORM).read_bytes()

def test_failed_generation_leaves_nothing(tmp_path):
    class BrokenKeyring(FakeKeyring):
        def generate_key(self, owner, email, passphrase_file):
            raise OSError('gpg exploded')

    store = KeyStore(tmp_path / 'keys')
    with pytest.raises(KeyGenerationError):
        generate_identity(store, 'Owner', 'owner@example.com', 'broken', PASSPHRASE,
                          keyring=BrokenKeyring(store.gnupg), entropy_root=tmp_path)
    assert not store.exists()

def test_entropy_helper_stops(tmp_path):
    (tmp_path / 'a').write_text('a')
    with EntropyHelper(tmp_path) as helper:
        assert helper.running
    assert not helper.running

def test_vendor_guids():
    assert CertificateRole.PLATFORM.vendor_guid == EFI_GLOBAL_VARIABLE
    assert CertificateRole.KEY_EXCHANGE.vendor_guid == EFI_GLOBAL_VARIABLE
    assert str(CertificateRole.SIGNATURE_DATABASE.vendor_guid) == 'd719b2cb-3d3a-4596-a3bc-dad00e67656f'

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
