# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
GPG Wrapper Module for Package Archives

Detached ASCII-armored signatures for published archives, and verification
of a downloaded archive against the fingerprint pinned for its repository.
"""

import os
import gnupg
from pathlib import Path
from typing import Optional, Tuple, Union


class GPGNotFoundError(Exception):
    """Raised when GPG executable is not found on the system"""
    pass


class KeyNotFoundError(Exception):
    """Raised when a required key is not found in the keyring"""
    pass


def _get_gpg_instance(keyring_dir: Optional[str] = None) -> gnupg.GPG:
    """
    Get GPG instance with optional custom keyring directory.

    Args:
        keyring_dir: Optional path to custom GPG keyring directory.
                    If None, uses system default (~/.gnupg)

    Returns:
        gnupg.GPG instance

    Raises:
        GPGNotFoundError: If GPG is not found
    """
    try:
        if keyring_dir:
            Path(keyring_dir).mkdir(parents=True, exist_ok=True)
            gpg = gnupg.GPG(gnupghome=str(keyring_dir))
        else:
            gpg = gnupg.GPG()

        # Test if GPG is available
        gpg.list_keys()
        return gpg
    except (OSError, ValueError, RuntimeError) as e:
        raise GPGNotFoundError(
            f"GPG not found or not properly configured. "
            f"Please install GPG (gpg or gnupg). Error: {str(e)}"
        )


def sign_archive(
    archive_path: Union[str, Path],
    key_id: str,
    keyring_dir: Optional[str] = None,
    passphrase: Optional[str] = None
) -> Path:
    """
    Creates a detached signature next to an archive.

    Args:
        archive_path: Archive to sign
        key_id: GPG key ID to use for signing
        keyring_dir: Optional custom keyring directory
        passphrase: Optional passphrase for the signing key.
                   If None, reads from CRIAGE_SIGNING_PASSPHRASE env var.

    Returns:
        Path to the created <archive>.asc file

    Raises:
        GPGNotFoundError: If GPG is not installed
        KeyNotFoundError: If signing key is not found
        FileNotFoundError: If the archive doesn't exist
        ValueError: If signing fails (including wrong passphrase)
    """
    gpg = _get_gpg_instance(keyring_dir)

    archive_path = Path(archive_path)
    if not archive_path.exists():
        raise FileNotFoundError(f"Archive to sign not found: {archive_path}")

    if not gpg.list_keys(secret=True, keys=key_id):
        raise KeyNotFoundError(f"Signing key not found: {key_id}")

    if passphrase is None:
        passphrase = os.getenv("CRIAGE_SIGNING_PASSPHRASE", "")

    with open(archive_path, "rb") as f:
        signed_data = gpg.sign_file(
            f,
            keyid=key_id,
            detach=True,
            binary=False,  # ASCII-armored output
            passphrase=passphrase
        )

    if not signed_data:
        error_msg = f"Failed to sign archive {archive_path}"
        if signed_data.stderr and "bad passphrase" in str(signed_data.stderr).lower():
            error_msg += ". Check CRIAGE_SIGNING_PASSPHRASE."
        raise ValueError(error_msg)

    signature_path = archive_path.with_name(archive_path.name + ".asc")
    signature_path.write_text(str(signed_data))
    return signature_path


def verify_archive(
    archive_path: Union[str, Path],
    signature_path: Union[str, Path],
    fingerprint: str,
    keyring_dir: Optional[str] = None
) -> Tuple[bool, str]:
    """
    Verifies a detached signature and the signer's fingerprint.

    Args:
        archive_path: Path to the signed archive
        signature_path: Path to the .asc signature file
        fingerprint: Expected signer fingerprint (full or long key ID suffix)
        keyring_dir: Optional custom keyring directory

    Returns:
        (is_valid, error_message): error_message is empty string if valid.

    Raises:
        GPGNotFoundError: If GPG is not installed
        FileNotFoundError: If archive or signature doesn't exist
    """
    gpg = _get_gpg_instance(keyring_dir)

    archive_path = Path(archive_path)
    signature_path = Path(signature_path)
    if not archive_path.exists():
        raise FileNotFoundError(f"Archive not found: {archive_path}")
    if not signature_path.exists():
        raise FileNotFoundError(f"Signature file not found: {signature_path}")

    with open(signature_path, "rb") as sig_file:
        verified = gpg.verify_file(sig_file, str(archive_path))

    if not verified.valid:
        if verified.status == "signature bad":
            return (False, "Signature does not match archive content")
        if verified.status == "no public key":
            return (False, f"Public key not found: {verified.key_id}")
        return (False, f"Verification failed: {verified.status or 'unknown error'}")

    expected = fingerprint.replace(" ", "").upper()
    actual = (verified.fingerprint or "").upper()
    if not expected or not actual.endswith(expected):
        return (False, f"Archive signed by {actual or 'unknown key'}, expected {expected}")

    return (True, "")
