#!/usr/bin/env python3
"""
age-passgen: deterministic age X25519 identities from passphrases

The same passphrase (or precomputed SHA-256 hash, or 32 raw bytes) always
produces the same AGE-SECRET-KEY-1... identity and age1... recipient, so the
key never has to be stored on disk.
"""

import os
import sys
import getpass
import hashlib
import binascii
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, Union

import bech32
import click
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

# Constants
PROG_NAME = "age-passgen"
SCALAR_SIZE = 32
RECIPIENT_HRP = "age"
SECRET_KEY_HRP = "age-secret-key-"

# Global debug flag
DEBUG = False

def debug_log(message):
    """Print debug messages only when DEBUG is True"""
    if DEBUG:
        click.echo(message, err=True)

# ====== Errors ======

class PassgenError(ValueError):
    """Base class for every error the derivation pipeline raises."""


class WeakInputError(PassgenError):
    """Passphrase is shorter than the selected entropy level allows."""

    def __init__(self, length: int, required: int):
        super().__init__(
            f"You should choose a stronger password! Got {length} bytes, "
            f"at least {required} required (or change the entropy level, see --help)"
        )
        self.length = length
        self.required = required


class MalformedHashError(PassgenError):
    """Hash input is not hex, or does not decode to a 32-byte digest.

    length counts hex characters when decoding failed and decoded bytes when
    the digest has the wrong size; unit names which one.
    """

    def __init__(self, message: str, length: int, unit: str):
        super().__init__(message)
        self.length = length
        self.unit = unit


class WrongLengthError(PassgenError):
    """Raw input is not exactly SCALAR_SIZE bytes."""

    def __init__(self, length: int):
        super().__init__(
            f"Wrong amount of entered data! Expected {SCALAR_SIZE} bytes, got: {length}"
        )
        self.length = length


class InvalidScalarLengthError(PassgenError):
    """A scalar of the wrong width reached the deriver."""

    def __init__(self, length: int):
        super().__init__(
            f"invalid X25519 secret key: expected {SCALAR_SIZE} bytes, got {length}"
        )
        self.length = length


class MalformedKeyError(PassgenError):
    """An encoded identity or recipient string could not be parsed."""

# ====== Entropy Gate ======

class StrengthLevel(IntEnum):
    UNRESTRICTED = 0
    VERYLOW = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4


# Minimum passphrase length in bytes for each level
ENTROPY_THRESHOLDS = {
    StrengthLevel.UNRESTRICTED: 0,
    StrengthLevel.VERYLOW: 8,
    StrengthLevel.LOW: 12,
    StrengthLevel.MEDIUM: 22,
    StrengthLevel.HIGH: 44,
}

def validate_entropy(material: Union[bytes, bytearray], level: StrengthLevel) -> bool:
    """
    Check a passphrase against the minimum length of a strength level.

    This is a coarse, length-only heuristic. It says nothing about character
    diversity and is not a strength guarantee. UNRESTRICTED accepts anything,
    including empty input.

    Args:
        material: Passphrase bytes exactly as they will be hashed
        level: Selected strength level

    Returns:
        True if the passphrase is long enough
    """
    return len(material) >= ENTROPY_THRESHOLDS[StrengthLevel(level)]

# ====== Input Reducer ======

class InputMode(Enum):
    PASSPHRASE = "password"
    HASH = "hash"
    RAW = "raw"


def reduce_passphrase(material: Union[bytes, bytearray],
                      level: StrengthLevel = StrengthLevel.MEDIUM) -> bytes:
    """Hash a passphrase into a scalar after checking it against the entropy gate.

    The digest is taken over the bytes as given; nothing is trimmed here.
    """
    if not validate_entropy(material, level):
        raise WeakInputError(len(material), ENTROPY_THRESHOLDS[StrengthLevel(level)])
    return hashlib.sha256(material).digest()

def reduce_hash(material: Union[bytes, bytearray]) -> bytes:
    """Decode a hex encoded 32-byte digest, ignoring surrounding whitespace."""
    hex_bytes = bytes(material).strip()
    try:
        scalar = binascii.unhexlify(hex_bytes)
    except (binascii.Error, ValueError) as e:
        raise MalformedHashError(
            f"Unable to decode hash, not a hex string of {len(hex_bytes)} characters: {e}",
            length=len(hex_bytes),
            unit="characters",
        ) from None
    if len(scalar) != SCALAR_SIZE:
        raise MalformedHashError(
            f"Wrong input length of sha256 hash! (maybe it is not a hash at all) "
            f"Expected {SCALAR_SIZE} bytes, got: {len(scalar)}",
            length=len(scalar),
            unit="bytes",
        )
    return scalar

def reduce_raw(material: Union[bytes, bytearray]) -> bytes:
    """Accept raw key material as-is when it is exactly SCALAR_SIZE bytes."""
    if len(material) != SCALAR_SIZE:
        raise WrongLengthError(len(material))
    return bytes(material)

def reduce_input(mode: InputMode, material: Union[bytes, bytearray],
                 level: StrengthLevel = StrengthLevel.MEDIUM) -> bytes:
    """
    Turn caller supplied input into a 32-byte scalar.

    Only passphrase input goes through the entropy gate; hash and raw input
    already have a fixed length, which says nothing about entropy.

    Args:
        mode: How to interpret the material
        material: Input bytes
        level: Strength level applied in passphrase mode

    Returns:
        32-byte scalar

    Raises:
        WeakInputError: passphrase below the level's threshold
        MalformedHashError: hash input not hex or not 32 bytes
        WrongLengthError: raw input not 32 bytes
    """
    mode = InputMode(mode)
    debug_log(f"Debug: reducing {len(material)} bytes of {mode.value} input")
    if mode is InputMode.PASSPHRASE:
        return reduce_passphrase(material, level)
    if mode is InputMode.HASH:
        return reduce_hash(material)
    return reduce_raw(material)

def strip_trailing_newline(material: bytearray) -> bytearray:
    """Remove one trailing \\n or \\r\\n in place, as left by line oriented input."""
    if material.endswith(b"\r\n"):
        del material[-2:]
    elif material.endswith(b"\n"):
        del material[-1:]
    return material

def wipe(buffer: bytearray) -> None:
    """Overwrite a mutable secret buffer with zeros."""
    for i in range(len(buffer)):
        buffer[i] = 0

# ====== Identity Deriver ======

class X25519Identity:
    """
    An age X25519 identity built directly from a trusted scalar.

    The scalar is stored verbatim. Clamping only happens inside the X25519
    primitive when the public key is computed, which is exactly what age does
    for the identities it generates. Unlike age's own parser this constructor
    accepts any 32 bytes, including material that is not independently random.
    """

    def __init__(self, secret_key: Union[bytes, bytearray]):
        if len(secret_key) != SCALAR_SIZE:
            raise InvalidScalarLengthError(len(secret_key))
        self._secret_key = bytes(secret_key)
        private_key = x25519.X25519PrivateKey.from_private_bytes(self._secret_key)
        self._public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @property
    def secret_key(self) -> bytes:
        return self._secret_key

    @property
    def public_key(self) -> bytes:
        return self._public_key

    def __eq__(self, other):
        if not isinstance(other, X25519Identity):
            return NotImplemented
        return self._secret_key == other._secret_key

    def __hash__(self):
        return hash(self._public_key)

    def __repr__(self):
        return f"X25519Identity(public_key={self._public_key.hex()})"


def derive_identity(scalar: Union[bytes, bytearray]) -> X25519Identity:
    """Derive the key pair for a scalar: public = X25519(scalar, 9)."""
    identity = X25519Identity(scalar)
    debug_log("Debug: derived X25519 public key from 32-byte scalar")
    return identity

def is_weak_scalar(scalar: Union[bytes, bytearray]) -> bool:
    """True for scalars that are trivially guessable (all bytes equal).

    Such scalars still derive a valid key pair; they are reported, not rejected.
    """
    return len(set(scalar)) <= 1

# ====== Identity Encoder ======

def to_bech32(data: bytes, hrp: str) -> str:
    """Convert bytes to bech32 encoding with specified human-readable prefix"""
    converted = bech32.convertbits(list(data), 8, 5)
    return bech32.bech32_encode(hrp, converted)

def from_bech32(key: str, hrp: str) -> bytes:
    """
    Decode a bech32 string and check its prefix and payload size.

    Args:
        key: Encoded string (either all upper or all lower case)
        hrp: Expected human-readable prefix

    Returns:
        32-byte payload

    Raises:
        MalformedKeyError: bad checksum, wrong prefix or wrong payload size
    """
    decoded_hrp, data = bech32.bech32_decode(key.strip())
    if decoded_hrp is None or data is None:
        raise MalformedKeyError("Invalid bech32 string (bad characters, mixed case or checksum)")
    if decoded_hrp != hrp:
        raise MalformedKeyError(f"Unexpected prefix {decoded_hrp!r}, expected {hrp!r}")
    payload = bech32.convertbits(data, 5, 8, False)
    if payload is None or len(payload) != SCALAR_SIZE:
        raise MalformedKeyError(
            f"Invalid key payload: length={len(payload) if payload else None}"
        )
    return bytes(payload)

def decode_secret_key(key: str) -> bytes:
    """Parse an AGE-SECRET-KEY-1... string back into its scalar."""
    return from_bech32(key, SECRET_KEY_HRP)

def decode_recipient(key: str) -> bytes:
    """Parse an age1... recipient back into its public key."""
    return from_bech32(key, RECIPIENT_HRP)


class EncodedIdentity:
    """Textual form of an identity, ready to be written out."""

    def __init__(self, secret_key: str, recipient: str, created: Optional[datetime] = None):
        self.secret_key = secret_key
        self.recipient = recipient
        self.created = created

    @property
    def verbose(self) -> bool:
        return self.created is not None

    @property
    def text(self) -> str:
        """Verbose output is a newline terminated key file; raw output is the bare key."""
        if not self.verbose:
            return self.secret_key
        return (
            f"# created: {self.created.isoformat(timespec='seconds')}\n"
            f"# public key: {self.recipient}\n"
            f"{self.secret_key}\n"
        )

    def __str__(self):
        return self.text

    def __repr__(self):
        return f"EncodedIdentity(recipient={self.recipient!r}, verbose={self.verbose})"


def encode_identity(identity: X25519Identity, verbose: bool = True,
                    now: Optional[datetime] = None) -> EncodedIdentity:
    """
    Render an identity as age key text.

    The creation timestamp is the only non-deterministic part of the output
    and is cosmetic. It is only included in verbose mode.

    Args:
        identity: Identity to encode, trusted as valid
        verbose: Include the "# created" and "# public key" comment lines
        now: Timestamp to use instead of the current time

    Returns:
        EncodedIdentity with upper-case secret key and lower-case recipient
    """
    recipient = to_bech32(identity.public_key, RECIPIENT_HRP)
    secret_key = to_bech32(identity.secret_key, SECRET_KEY_HRP).upper()

    created = None
    if verbose:
        if now is None:
            now = datetime.now().astimezone()
        elif now.tzinfo is None:
            now = now.astimezone()
        created = now.replace(microsecond=0)

    return EncodedIdentity(secret_key, recipient, created)

# ====== CLI ======

def fail(message: str) -> None:
    """Report an error the way every command does and exit with status 1."""
    click.echo(f"{PROG_NAME} ERROR: {message}", err=True)
    sys.exit(1)

def parse_strength_level(value: str) -> StrengthLevel:
    """
    Map an --entropy-level value to a StrengthLevel.

    Accepts stupid, verylow, low, medium, high or the numbers 1 to 4.
    0 is rejected on purpose: the unrestricted level has to be asked for by name.
    """
    try:
        number = int(value)
    except ValueError:
        number = None

    if number is not None:
        if number == 0:
            raise ValueError("No such entropy level `0`, try `stupid`")
        if not 1 <= number <= 4:
            raise ValueError(f"Wrong entropy level `{number}`, level should be within range 1 to 4")
        return StrengthLevel(number)

    level_words = {
        "stupid": StrengthLevel.UNRESTRICTED,
        "verylow": StrengthLevel.VERYLOW,
        "low": StrengthLevel.LOW,
        "medium": StrengthLevel.MEDIUM,
        "high": StrengthLevel.HIGH,
    }
    if value not in level_words:
        raise ValueError(f"Such entropy level does not exist: {value}. Maybe mistyped?")
    return level_words[value]


class EntropyLevelType(click.ParamType):
    name = "level"

    def convert(self, value, param, ctx):
        if isinstance(value, StrengthLevel):
            return value
        try:
            return parse_strength_level(str(value))
        except ValueError as e:
            self.fail(str(e), param, ctx)


def read_input_bytes(prompt: str = "Enter pass: ") -> bytearray:
    """Prompt on a terminal with hidden input, otherwise read all of stdin."""
    if sys.stdin.isatty():
        return bytearray(getpass.getpass(prompt).encode("utf-8"))
    return bytearray(sys.stdin.buffer.read())

def write_output(text: str, output: Optional[str]) -> None:
    """Write key text to a file (created with 0600 permissions) or stdout"""
    if output:
        with open(output, "w", encoding="utf-8") as f:
            os.chmod(output, 0o600)
            f.write(text)
        debug_log(f"Debug: wrote identity to {output}")
    else:
        click.echo(text, nl=False)


@click.group(
    help="""Deterministic age key generator.

Derives an age X25519 identity from a password, a SHA-256 hash or 32 raw
bytes. The same input always gives the same identity.

Examples:
* Derive from an interactive password:
  age-passgen generate -o key.txt

* Derive from an existing hash:
  echo 9f86d0... | age-passgen generate --input-type hash

* Check a key pair:
  age-passgen validate --identity AGE-SECRET-KEY-1... --recipient age1...
"""
)
@click.option('--debug', is_flag=True, help='Enable debug output')
def cli(debug):
    """Deterministic age key generator."""
    global DEBUG
    DEBUG = debug


@cli.command(
    short_help="Derive an identity from stdin or a password prompt",
    help="""Derive an age identity from stdin or a password prompt.

Required password strength can be changed with --entropy-level. Possible
values are high, medium (default), low, verylow, stupid and the numbers
1 to 4. Each word or number maps to a minimum password length:

\b
- high    (or 4) - 44 characters
- medium  (or 3) - 22 characters
- low     (or 2) - 12 characters
- verylow (or 1) -  8 characters
- stupid         - no limit

Length is only a rough proxy for entropy, not a guarantee of strength.

Piped password input is hashed byte for byte, including a trailing newline,
unless --strip-newline is given.
"""
)
@click.option("-o", "--output", type=click.Path(dir_okay=False, writable=True),
              help="Write the result to the file at path OUTPUT")
@click.option("--raw-output", is_flag=True,
              help="Print stripped keys (without additional text or comments)")
@click.option("--entropy-level", type=EntropyLevelType(), default="medium", show_default=True,
              help="Required strength of the password (see above)")
@click.option("--input-type", type=click.Choice([m.value for m in InputMode]),
              default=InputMode.PASSPHRASE.value, show_default=True,
              help="Type of input from stdin")
@click.option("--strip-newline/--keep-newline", default=False, show_default=True,
              help="Remove one trailing newline from piped password input")
def generate(output, raw_output, entropy_level, input_type, strip_newline):
    """Derive an age identity from stdin or a password prompt."""
    mode = InputMode(input_type)
    debug_log(f"Debug: input type={mode.value}, entropy level={entropy_level.name.lower()}")

    try:
        material = read_input_bytes()
    except (OSError, EOFError) as e:
        fail(f"Failed to read input, error: {e}")

    try:
        if mode is InputMode.PASSPHRASE and strip_newline:
            strip_trailing_newline(material)
        scalar = reduce_input(mode, material, entropy_level)
    except PassgenError as e:
        fail(f"Failed to get {mode.value} input, error: {e}")
    finally:
        wipe(material)

    if is_weak_scalar(scalar):
        click.echo("WARNING: key material is a single repeated byte and trivially guessable!", err=True)

    try:
        identity = derive_identity(scalar)
    except PassgenError as e:
        fail(f"internal error: {e}")

    encoded = encode_identity(identity, verbose=not raw_output)

    try:
        write_output(encoded.text, output)
    except BrokenPipeError:
        fail("Broken pipe. Check that the program receiving the output does not exit before this one")
    except OSError as e:
        fail(f"Failed to write secret key, error: {e}")

    # The key file also holds the public key; repeat it on stderr only when
    # the user is not looking at that file on the terminal.
    if output or not sys.stdout.isatty():
        if raw_output:
            click.echo(encoded.recipient, err=True)
        else:
            click.echo(f"Public key: {encoded.recipient}", err=True)


def first_key_line(text: str) -> str:
    """Return the first line of key file text that is not blank or a comment"""
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return line
    return ""


@cli.command()
@click.option("--identity", required=True,
              help="Secret key to check (AGE-SECRET-KEY-1...), or - to read a key file from stdin")
@click.option("--recipient", help="Recipient to validate against (optional, will be derived if not provided)")
def validate(identity, recipient):
    """Validate an age identity and optionally its recipient.

This command takes a secret key and re-derives its public key. If a
recipient is also given, it checks that both form a valid key pair.

Examples:
  # Show the recipient for a key:
  age-passgen validate --identity AGE-SECRET-KEY-1...

  # Read a key file from stdin and check a key pair:
  age-passgen validate --identity - --recipient age1... < key.txt
    """
    if identity == "-":
        identity = first_key_line(sys.stdin.read())

    try:
        scalar = decode_secret_key(identity)
        derived = encode_identity(derive_identity(scalar), verbose=False)
    except PassgenError as e:
        fail(f"Could not decode the identity, error: {e}")

    click.echo(f"Derived recipient: {derived.recipient}")

    if recipient:
        try:
            decode_recipient(recipient)
        except PassgenError as e:
            fail(f"Could not decode the recipient, error: {e}")
        if recipient.strip().lower() != derived.recipient:
            fail("The provided recipient does NOT match the identity. This is NOT a valid key pair.")
        click.echo("The provided recipient matches the identity. This is a valid key pair.")


def main():
    cli(auto_envvar_prefix="AGE_PASSGEN")


if __name__ == "__main__":
    main()
