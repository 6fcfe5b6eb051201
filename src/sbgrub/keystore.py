# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=import-outside-toplevel

"""Signing identity: three Secure Boot certificates plus the OpenPGP key.

Layout of the key store directory:

    PK.key  PK.crt  PK.cer  PK.esl  PK.auth
    KEK.key KEK.crt KEK.cer KEK.esl KEK.auth
    db.key  db.crt  db.cer  db.esl  db.auth
    noPK.auth
    GUID
    gnupg/
"""

import contextlib
import dataclasses
import datetime
import enum
import logging
import os
import shutil
import struct
import subprocess
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

from sbgrub.errors import KeyGenerationError
from sbgrub.gpg import Keyring
from sbgrub.util import phase, scrub_file, temporary_umask, warn

logger = logging.getLogger(__name__)

CERT_VALID_DAYS = 3650
CERT_KEY_LENGTH = 2048

EFI_CERT_X509_GUID = uuid.UUID('a5c059a1-94e4-4aa7-87b5-ab155c2bf072')
EFI_CERT_TYPE_PKCS7_GUID = uuid.UUID('4aafd29d-68df-49ee-8aa9-347d375665a7')
EFI_GLOBAL_VARIABLE = uuid.UUID('8be4df61-93ca-11d2-aa0d-00e098032b8c')
EFI_IMAGE_SECURITY_DATABASE_GUID = uuid.UUID('d719b2cb-3d3a-4596-a3bc-dad00e67656f')

WIN_CERT_REVISION = 0x0200
WIN_CERT_TYPE_EFI_GUID = 0x0EF1

EFI_VARIABLE_NON_VOLATILE = 0x01
EFI_VARIABLE_BOOTSERVICE_ACCESS = 0x02
EFI_VARIABLE_RUNTIME_ACCESS = 0x04
EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS = 0x20

AUTH_ATTRIBUTES = (
    EFI_VARIABLE_NON_VOLATILE
    | EFI_VARIABLE_BOOTSERVICE_ACCESS
    | EFI_VARIABLE_RUNTIME_ACCESS
    | EFI_VARIABLE_TIME_BASED_AUTHENTICATED_WRITE_ACCESS
)


class CertificateRole(enum.Enum):
    PLATFORM = 'PK'
    KEY_EXCHANGE = 'KEK'
    SIGNATURE_DATABASE = 'db'

    @property
    def variable(self) -> str:
        return self.value

    @property
    def cn_suffix(self) -> str:
        return {
            CertificateRole.PLATFORM: 'Platform Key',
            CertificateRole.KEY_EXCHANGE: 'Key Exchange Key',
            CertificateRole.SIGNATURE_DATABASE: 'Signature Database Key',
        }[self]

    @property
    def vendor_guid(self) -> uuid.UUID:
        if self is CertificateRole.SIGNATURE_DATABASE:
            return EFI_IMAGE_SECURITY_DATABASE_GUID
        return EFI_GLOBAL_VARIABLE


@dataclasses.dataclass(frozen=True)
class KeyStore:
    directory: Path

    def key(self, role: CertificateRole) -> Path:
        return self.directory / f'{role.value}.key'

    def cert(self, role: CertificateRole) -> Path:
        return self.directory / f'{role.value}.crt'

    def der(self, role: CertificateRole) -> Path:
        return self.directory / f'{role.value}.cer'

    def esl(self, role: CertificateRole) -> Path:
        return self.directory / f'{role.value}.esl'

    def auth(self, role: CertificateRole) -> Path:
        return self.directory / f'{role.value}.auth'

    @property
    def pk_removal(self) -> Path:
        return self.directory / 'noPK.auth'

    @property
    def guid_file(self) -> Path:
        return self.directory / 'GUID'

    @property
    def gnupg(self) -> Path:
        return self.directory / 'gnupg'

    def files(self) -> list[Path]:
        paths = [self.guid_file, self.pk_removal]
        for role in CertificateRole:
            paths += [self.key(role), self.cert(role), self.der(role), self.esl(role), self.auth(role)]
        return paths

    def exists(self) -> bool:
        return any(p.exists() for p in self.files()) or self.gnupg.exists()

    def remove(self) -> None:
        for path in self.files():
            path.unlink(missing_ok=True)
        if self.gnupg.exists():
            shutil.rmtree(self.gnupg)

    def guid(self) -> uuid.UUID:
        return uuid.UUID(self.guid_file.read_text().strip())


@dataclasses.dataclass(frozen=True)
class SigningIdentity:
    store: KeyStore
    fingerprint: str
    guid: uuid.UUID
    passphrase_protected: bool

    @property
    def db_key(self) -> Path:
        return self.store.key(CertificateRole.SIGNATURE_DATABASE)

    @property
    def db_cert(self) -> Path:
        return self.store.cert(CertificateRole.SIGNATURE_DATABASE)


def generate_key_cert_pair(
    common_name: str,
    valid_days: int = CERT_VALID_DAYS,
    keylength: int = CERT_KEY_LENGTH,
) -> tuple[Any, Any]:
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import rsa

    # We use a keylength of 2048 bits. That is what Microsoft documents as
    # supported/expected:
    # https://learn.microsoft.com/en-us/windows-hardware/manufacture/desktop/windows-secure-boot-key-creation-and-management-guidance?view=windows-11#12-public-key-cryptography

    now = datetime.datetime.now(datetime.timezone.utc)

    key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=keylength,
    )
    name = x509.Name([x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=valid_days))
        .serial_number(x509.random_serial_number())
        .public_key(key.public_key())
        .add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([x509.oid.ExtendedKeyUsageOID.CODE_SIGNING]),
            critical=False,
        )
        .sign(
            private_key=key,
            algorithm=hashes.SHA256(),
        )
    )

    return key, cert


def role_common_name(common_name: str, role: CertificateRole) -> str:
    cn = f'{common_name} {role.cn_suffix}'
    if len(cn) > 64:
        # The length of CN must not exceed 64 bytes
        cn = cn[:61] + '...'
    return cn


def signature_list(cert_der: bytes, owner: uuid.UUID) -> bytes:
    """EFI_SIGNATURE_LIST with a single X.509 EFI_SIGNATURE_DATA entry."""
    signature_size = 16 + len(cert_der)
    header = struct.pack(
        '<16sIII',
        EFI_CERT_X509_GUID.bytes_le,
        28 + signature_size,
        0,
        signature_size,
    )
    return header + owner.bytes_le + cert_der


def efi_time(when: datetime.datetime) -> bytes:
    when = when.astimezone(datetime.timezone.utc)
    # Year, Month, Day, Hour, Minute, Second, Pad1, Nanosecond, TimeZone, Daylight, Pad2
    return struct.pack(
        '<HBBBBBBIhBB',
        when.year, when.month, when.day,
        when.hour, when.minute, when.second,
        0, 0, 0, 0, 0,
    )  # fmt: skip


def authenticated_update(
    variable: str,
    vendor_guid: uuid.UUID,
    data: bytes,
    signer_key: Any,
    signer_cert: Any,
    timestamp: Optional[datetime.datetime] = None,
) -> bytes:
    """Build an EFI_VARIABLE_AUTHENTICATION_2 payload followed by data."""
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.serialization import pkcs7

    timestamp = timestamp or datetime.datetime.now(datetime.timezone.utc)
    time = efi_time(timestamp)

    signed = (
        variable.encode('utf-16-le')
        + vendor_guid.bytes_le
        + struct.pack('<I', AUTH_ATTRIBUTES)
        + time
        + data
    )
    p7 = (
        pkcs7.PKCS7SignatureBuilder()
        .set_data(signed)
        .add_signer(signer_cert, signer_key, hashes.SHA256())
        .sign(
            serialization.Encoding.DER,
            [
                pkcs7.PKCS7Options.DetachedSignature,
                pkcs7.PKCS7Options.Binary,
                pkcs7.PKCS7Options.NoAttributes,
            ],
        )
    )

    # WIN_CERTIFICATE_UEFI_GUID: dwLength covers the header, CertType and CertData
    win_cert = struct.pack(
        '<IHH16s',
        8 + 16 + len(p7),
        WIN_CERT_REVISION,
        WIN_CERT_TYPE_EFI_GUID,
        EFI_CERT_TYPE_PKCS7_GUID.bytes_le,
    )
    return time + win_cert + p7 + data


def parse_authenticated_update(payload: bytes) -> tuple[bytes, bytes, bytes]:
    """Split an authenticated update into (EFI_TIME, PKCS#7 DER, data)."""
    time = payload[:16]
    length, revision, cert_type, guid = struct.unpack_from('<IHH16s', payload, 16)
    if revision != WIN_CERT_REVISION or cert_type != WIN_CERT_TYPE_EFI_GUID:
        raise ValueError('Not a WIN_CERTIFICATE_UEFI_GUID header')
    if uuid.UUID(bytes_le=guid) != EFI_CERT_TYPE_PKCS7_GUID:
        raise ValueError('Certificate type is not PKCS#7')
    p7 = payload[16 + 24 : 16 + length]
    return time, p7, payload[16 + length :]


class EntropyHelper:
    """Keep the disks busy while keys are generated.

    A single daemon thread walks the file system until stopped. Used as a
    context manager, it is stopped and joined on every exit path.
    """

    def __init__(self, root: Path = Path('/usr')):
        self.root = root
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._walk, name='entropy', daemon=True)

    def _walk(self) -> None:
        while not self._stop.is_set():
            for dirpath, _, filenames in os.walk(self.root, onerror=lambda e: None):
                if self._stop.is_set():
                    return
                for name in filenames:
                    with contextlib.suppress(OSError):
                        os.stat(os.path.join(dirpath, name))
            self._stop.wait(0.1)

    def __enter__(self) -> 'EntropyHelper':
        self._thread.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self._stop.set()
        self._thread.join()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()


def _write_private(path: Path, data: bytes) -> None:
    with temporary_umask(0o077):
        path.write_bytes(data)


def generate_identity(
    store: KeyStore,
    owner: str,
    email: str,
    common_name: str,
    passphrase: Optional[str],
    keyring: Optional[Keyring] = None,
    overwrite: bool = False,
    entropy_root: Path = Path('/usr'),
) -> SigningIdentity:
    from cryptography.hazmat.primitives import serialization

    if store.exists():
        if not overwrite:
            raise KeyGenerationError(
                f'Signing identity already exists in {store.directory}, refusing to overwrite without confirmation'
            )
        warn(f'Removing existing signing identity in {store.directory}. '
             'Everything signed with it must be signed again (sign-all).')
        store.remove()

    if not passphrase:
        warn('No passphrase given, private keys will be stored unencrypted.')
        encryption: Any = serialization.NoEncryption()
    else:
        encryption = serialization.BestAvailableEncryption(passphrase.encode())

    keyring = keyring or Keyring(store.gnupg)
    guid = uuid.uuid4()

    with temporary_umask(0o077):
        store.directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    phase(f'Generating signing identity in {store.directory}')

    try:
        with EntropyHelper(entropy_root), tempfile.TemporaryDirectory(prefix='sbgrub-genkey') as tmp:
            keys = {}
            for role in CertificateRole:
                key, cert = generate_key_cert_pair(role_common_name(common_name, role))
                keys[role] = (key, cert)

                logger.info(f'Writing {role.name} private key to {store.key(role)}')
                _write_private(
                    store.key(role),
                    key.private_bytes(
                        encoding=serialization.Encoding.PEM,
                        format=serialization.PrivateFormat.PKCS8,
                        encryption_algorithm=encryption,
                    ),
                )
                store.cert(role).write_bytes(cert.public_bytes(serialization.Encoding.PEM))
                der = cert.public_bytes(serialization.Encoding.DER)
                store.der(role).write_bytes(der)
                store.esl(role).write_bytes(signature_list(der, guid))

            # The platform key authorizes every update, including its own.
            pk_key, pk_cert = keys[CertificateRole.PLATFORM]
            for role in CertificateRole:
                logger.info(f'Writing authenticated {role.variable} update to {store.auth(role)}')
                store.auth(role).write_bytes(
                    authenticated_update(
                        role.variable,
                        role.vendor_guid,
                        store.esl(role).read_bytes(),
                        pk_key,
                        pk_cert,
                    )
                )
            store.pk_removal.write_bytes(
                authenticated_update('PK', EFI_GLOBAL_VARIABLE, b'', pk_key, pk_cert)
            )

            keyring.create()
            passphrase_file = None
            if passphrase:
                passphrase_file = Path(tmp) / 'passphrase'
                _write_private(passphrase_file, passphrase.encode())
            try:
                fpr = keyring.generate_key(owner, email, passphrase_file)
            finally:
                if passphrase_file is not None:
                    scrub_file(passphrase_file)
                keyring.kill_agent()

            store.guid_file.write_text(f'{guid}\n')
    except (OSError, ValueError, subprocess.CalledProcessError) as e:
        store.remove()
        raise KeyGenerationError(f'Key generation failed: {e}') from e

    logger.info(f'Signing key {fpr}, signature list GUID {guid}')
    return SigningIdentity(store, fpr, guid, bool(passphrase))


def load_identity(store: KeyStore, keyring: Optional[Keyring] = None) -> Optional[SigningIdentity]:
    """Return the identity in store, or None if it is incomplete."""
    if not store.guid_file.exists():
        return None
    for role in CertificateRole:
        if not store.key(role).exists() or not store.cert(role).exists():
            return None

    keyring = keyring or Keyring(store.gnupg)
    fpr = keyring.fingerprint()
    if fpr is None:
        return None

    return SigningIdentity(
        store,
        fpr,
        store.guid(),
        b'ENCRYPTED' in store.key(CertificateRole.SIGNATURE_DATABASE).read_bytes(),
    )
