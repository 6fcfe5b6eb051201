# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=redefined-outer-name

import subprocess
import sys
import textwrap

import pytest
from conftest import FakeBootManager, FakeResolver

from sbgrub.boot import GRUB_CFG_STUB, BootEntry, DeviceResolver, TrustEnforcer, loader_path, parse_boot_entries
from sbgrub.errors import RegistrationError
from sbgrub.image import StandaloneImage


@pytest.fixture
def image(tmp_path):
    path = tmp_path / 'grub-x86_64-efi.efi'
    path.write_bytes(b'MZ signed image')
    return StandaloneImage(path, 'x86_64-efi', ['pgp'])

def make_enforcer(tmp_path, manager, **kwargs):
    return TrustEnforcer(
        efi_dir=tmp_path / 'efi',
        boot_dir=tmp_path / 'boot',
        efi_arch='x64',
        platform='x86_64-efi',
        label='Secure GRUB',
        manager=manager,
        resolver=kwargs.pop('resolver', FakeResolver()),
        **kwargs,
    )


def test_parse_boot_entries():
    text = textwrap.dedent('''\
        BootCurrent: 0001
        Timeout: 1 seconds
        BootOrder: 0001,0000,0003
        Boot0000* debian\tHD(1,GPT,0a1b,0x800,0x100000)/File(\\EFI\\debian\\shimx64.efi)
        Boot0001* Secure GRUB\tHD(1,GPT,0a1b,0x800,0x100000)/File(\\EFI\\sbgrub\\grubx64.efi)
        Boot0003  UEFI PXEv4\tPciRoot(0x0)/Pci(0x3,0x0)
        ''')
    entries = parse_boot_entries(text)
    assert [e.number for e in entries] == ['0000', '0001', '0003']
    assert entries[1].label == 'Secure GRUB'
    assert entries[1].active
    assert not entries[2].active

def test_loader_path():
    assert loader_path('sbgrub', 'x64') == '\\EFI\\sbgrub\\grubx64.efi'

def test_install_replaces_entries(tmp_path, image):
    manager = FakeBootManager([
        BootEntry('0000', 'debian'),
        BootEntry('0001', 'Secure GRUB'),
        BootEntry('0002', 'Secure GRUB'),
    ])
    enforcer = make_enforcer(tmp_path, manager)

    entry = enforcer.install(image)

    assert entry.label == 'Secure GRUB'
    assert [e.label for e in manager.entries].count('Secure GRUB') == 1
    assert 'debian' in [e.label for e in manager.entries]
    assert manager.created == [('/dev/vda', 1, 'Secure GRUB', '\\EFI\\sbgrub\\grubx64.efi')]
    installed = tmp_path / 'efi' / 'EFI' / 'sbgrub' / 'grubx64.efi'
    assert installed.read_bytes() == b'MZ signed image'

def test_install_twice_keeps_one_entry(tmp_path, image):
    manager = FakeBootManager()
    enforcer = make_enforcer(tmp_path, manager)
    enforcer.install(image)
    enforcer.install(image)
    assert [e.label for e in manager.entries] == ['Secure GRUB']

def test_delete_failure_is_not_fatal(tmp_path, image):
    class StubbornManager(FakeBootManager):
        def delete(self, number):
            raise subprocess.CalledProcessError(1, ['efibootmgr'])

    manager = StubbornManager([BootEntry('0001', 'Secure GRUB')])
    make_enforcer(tmp_path, manager).install(image)
    assert len(manager.created) == 1

def test_registration_failure(tmp_path, image):
    class NoDevice:
        def resolve(self, mountpoint):
            raise RegistrationError(f'{mountpoint} is not a partition')

    with pytest.raises(RegistrationError):
        make_enforcer(tmp_path, FakeBootManager(), resolver=NoDevice()).install(image)

def test_registration_tool_failure(tmp_path, image):
    class BrokenManager(FakeBootManager):
        def create(self, disk, partition, label, loader):
            raise subprocess.CalledProcessError(5, ['efibootmgr'])

    with pytest.raises(RegistrationError):
        make_enforcer(tmp_path, BrokenManager()).install(image)

def test_purge(tmp_path):
    vendor = tmp_path / 'efi' / 'EFI' / 'debian'
    vendor.mkdir(parents=True)
    for name in ('shimx64.efi', 'grubx64.efi', 'grub.cfg', 'BOOTX64.CSV'):
        (vendor / name).write_text(name)

    grub = tmp_path / 'boot' / 'grub'
    for d in ('fonts', 'locale', 'x86_64-efi', 'themes'):
        (grub / d).mkdir(parents=True)
        (grub / d / 'file').write_text('x')
    (grub / 'grubenv').write_text('env')
    (grub / 'grub.cfg').write_text('menuentry "unsigned" {}')

    removed = make_enforcer(tmp_path, FakeBootManager(), vendor_dirs=[vendor]).purge()

    assert sorted(p.name for p in vendor.iterdir()) == ['BOOTX64.CSV']
    assert sorted(p.name for p in grub.iterdir()) == ['grub.cfg', 'themes']
    assert (grub / 'grub.cfg').read_text() == GRUB_CFG_STUB
    assert grub / 'grubenv' in removed

def test_install_into_vendor_directory(tmp_path, image):
    vendor = tmp_path / 'efi' / 'EFI' / 'ubuntu'
    vendor.mkdir(parents=True)
    for name in ('shimx64.efi', 'grubx64.efi', 'mmx64.efi', 'grub.cfg'):
        (vendor / name).write_text(name)

    manager = FakeBootManager()
    enforcer = make_enforcer(tmp_path, manager, bootloader_id='ubuntu', vendor_dirs=[vendor])
    enforcer.install(image)

    assert enforcer.image_path == vendor / 'grubx64.efi'
    assert enforcer.image_path.read_bytes() == b'MZ signed image'
    assert sorted(p.name for p in vendor.iterdir()) == ['grubx64.efi']
    assert manager.created == [('/dev/vda', 1, 'Secure GRUB', '\\EFI\\ubuntu\\grubx64.efi')]

def test_device_resolver(tmp_path, monkeypatch):
    sysfs = tmp_path / 'sys'
    disk = sysfs / 'devices' / 'pci0000:00' / 'nvme0n1'
    (disk / 'nvme0n1p1').mkdir(parents=True)
    (disk / 'nvme0n1p1' / 'partition').write_text('1\n')
    (sysfs / 'class' / 'block').mkdir(parents=True)
    (sysfs / 'class' / 'block' / 'nvme0n1p1').symlink_to(disk / 'nvme0n1p1')

    resolver = DeviceResolver(sysfs=sysfs)
    monkeypatch.setattr(resolver, 'source', lambda mountpoint: '/dev/nvme0n1p1')
    assert resolver.resolve(tmp_path) == ('/dev/nvme0n1', 1)

def test_device_resolver_not_a_device(tmp_path, monkeypatch):
    resolver = DeviceResolver(sysfs=tmp_path)
    monkeypatch.setattr(resolver, 'source', lambda mountpoint: 'tmpfs')
    with pytest.raises(RegistrationError):
        resolver.resolve(tmp_path)

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
