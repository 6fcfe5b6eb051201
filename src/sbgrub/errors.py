# SPDX-License-Identifier: LGPL-2.1-or-later


class SbgrubError(Exception):
    pass


class PrivilegeError(SbgrubError):
    pass


class KeyGenerationError(SbgrubError):
    pass


class PassphraseMismatch(SbgrubError):
    pass


class AssemblyError(SbgrubError):
    pass


class SigningError(SbgrubError):
    pass


class UpstreamSignatureInvalid(SbgrubError):
    pass


class RegistrationError(SbgrubError):
    pass
