import hashlib
import os
import stat

import pytest
from click.testing import CliRunner

from age_passgen import cli, decode_recipient, decode_secret_key

PASSPHRASE = b"correct horse battery staple plus extra"


@pytest.fixture
def runner():
    return CliRunner()


def generate(runner, *args, input=PASSPHRASE, env=None):
    return runner.invoke(cli, ["generate", *args], input=input, env=env)


def test_generate_verbose(runner):
    result = generate(runner)
    assert result.exit_code == 0, result.output
    lines = result.stdout.splitlines()
    assert len(lines) == 3
    assert lines[0].startswith("# created: ")
    assert lines[1].startswith("# public key: age1")
    assert decode_secret_key(lines[2]) == hashlib.sha256(PASSPHRASE).digest()
    # stdout is not a terminal, so the recipient is repeated on stderr
    assert result.stderr == f"Public key: {lines[1][len('# public key: '):]}\n"


def test_generate_is_deterministic(runner):
    first = generate(runner, "--raw-output")
    second = generate(runner, "--raw-output")
    assert first.stdout == second.stdout
    assert first.stdout.startswith("AGE-SECRET-KEY-1")
    assert not first.stdout.endswith("\n")


def test_raw_output_repeats_bare_recipient(runner):
    result = generate(runner, "--raw-output")
    recipient = result.stderr.strip()
    assert recipient.startswith("age1")
    decode_recipient(recipient)


def test_newline_kept_by_default(runner):
    kept = generate(runner, "--raw-output", input=PASSPHRASE + b"\n")
    stripped = generate(runner, "--raw-output", "--strip-newline", input=PASSPHRASE + b"\n")
    plain = generate(runner, "--raw-output", input=PASSPHRASE)
    assert decode_secret_key(kept.stdout) == hashlib.sha256(PASSPHRASE + b"\n").digest()
    assert stripped.stdout == plain.stdout


def test_weak_password(runner):
    result = generate(runner, "--entropy-level", "high")
    assert result.exit_code == 1
    assert "age-passgen ERROR" in result.stderr
    assert "stronger password" in result.stderr
    assert result.stdout == ""


def test_stupid_level_accepts_anything(runner):
    result = generate(runner, "--entropy-level", "stupid", "--raw-output", input=b"")
    assert result.exit_code == 0
    assert decode_secret_key(result.stdout) == hashlib.sha256(b"").digest()


@pytest.mark.parametrize("level,message", [
    ("0", "try `stupid`"),
    ("7", "within range 1 to 4"),
    ("strong", "does not exist"),
])
def test_bad_entropy_level(runner, level, message):
    result = generate(runner, "--entropy-level", level)
    assert result.exit_code == 2
    assert message in result.stderr


def test_entropy_level_from_environment(runner):
    result = runner.invoke(
        cli, ["generate"], input=PASSPHRASE,
        auto_envvar_prefix="AGE_PASSGEN",
        env={"AGE_PASSGEN_GENERATE_ENTROPY_LEVEL": "high"},
    )
    assert result.exit_code == 1
    assert "stronger password" in result.stderr


def test_hash_input(runner):
    digest = hashlib.sha256(b"test").digest()
    result = generate(runner, "--input-type", "hash", "--raw-output",
                      input=digest.hex().encode() + b"\n")
    assert result.exit_code == 0
    assert decode_secret_key(result.stdout) == digest


def test_hash_input_matches_password_input(runner):
    from_password = generate(runner, "--raw-output")
    from_hash = generate(runner, "--input-type", "hash", "--raw-output",
                         input=hashlib.sha256(PASSPHRASE).hexdigest().encode())
    assert from_password.stdout == from_hash.stdout


def test_malformed_hash(runner):
    result = generate(runner, "--input-type", "hash", input=b"abcd")
    assert result.exit_code == 1
    assert "got: 2" in result.stderr
    assert result.stdout == ""


def test_raw_input(runner):
    material = bytes(range(32))
    result = generate(runner, "--input-type", "raw", "--raw-output", input=material)
    assert result.exit_code == 0
    assert decode_secret_key(result.stdout) == material


def test_raw_input_wrong_length(runner):
    result = generate(runner, "--input-type", "raw", input=bytes(range(32)) + b"\n")
    assert result.exit_code == 1
    assert "Expected 32 bytes, got: 33" in result.stderr


def test_weak_scalar_warning(runner):
    result = generate(runner, "--input-type", "raw", "--raw-output", input=b"\x00" * 32)
    assert result.exit_code == 0
    assert "WARNING" in result.stderr


def test_output_file(runner, tmp_path):
    path = tmp_path / "key.txt"
    result = generate(runner, "-o", str(path))
    assert result.exit_code == 0
    assert result.stdout == ""
    content = path.read_text()
    assert content.splitlines()[2].startswith("AGE-SECRET-KEY-1")
    assert result.stderr.startswith("Public key: age1")
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_no_output_file_on_failure(runner, tmp_path):
    path = tmp_path / "key.txt"
    result = generate(runner, "-o", str(path), "--entropy-level", "high")
    assert result.exit_code == 1
    assert not path.exists()


def test_debug_does_not_leak_secret(runner):
    result = runner.invoke(cli, ["--debug", "generate", "--raw-output"], input=PASSPHRASE)
    assert result.exit_code == 0
    assert "Debug:" in result.stderr
    assert PASSPHRASE.decode() not in result.stderr
    assert result.stdout not in result.stderr


def test_validate_derives_recipient(runner):
    generated = generate(runner)
    lines = generated.stdout.splitlines()
    recipient = lines[1][len("# public key: "):]

    result = runner.invoke(cli, ["validate", "--identity", lines[2]])
    assert result.exit_code == 0
    assert f"Derived recipient: {recipient}" in result.stdout


def test_validate_key_pair_from_stdin(runner):
    generated = generate(runner)
    recipient = generated.stdout.splitlines()[1][len("# public key: "):]

    result = runner.invoke(cli, ["validate", "--identity", "-", "--recipient", recipient],
                           input=generated.stdout)
    assert result.exit_code == 0
    assert "valid key pair" in result.stdout


def test_validate_mismatch(runner):
    first = generate(runner, "--raw-output")
    other = generate(runner, "--raw-output", "--entropy-level", "stupid", input=b"other")
    result = runner.invoke(cli, ["validate", "--identity", first.stdout,
                                 "--recipient", other.stderr.strip()])
    assert result.exit_code == 1
    assert "does NOT match" in result.stderr


def test_validate_malformed_identity(runner):
    result = runner.invoke(cli, ["validate", "--identity", "AGE-SECRET-KEY-1NOPE"])
    assert result.exit_code == 1
    assert "Could not decode the identity" in result.stderr


def test_no_recipient_echo_when_write_fails(runner, tmp_path):
    path = tmp_path / "missing" / "key.txt"
    result = generate(runner, "-o", str(path))
    assert result.exit_code == 1
    assert "Failed to write secret key" in result.stderr
    assert "Public key" not in result.stderr
    assert "age1" not in result.stderr


@pytest.mark.filterwarnings("error::DeprecationWarning")
def test_piped_input_reads_stdin_without_deprecated_helpers(runner):
    generated = generate(runner, "--input-type", "raw", "--raw-output", input=bytes(range(32)))
    assert generated.exit_code == 0, generated.output

    result = runner.invoke(cli, ["validate", "--identity", "-"], input=generated.stdout + "\n")
    assert result.exit_code == 0, result.output
    assert f"Derived recipient: {generated.stderr.strip()}" in result.stdout
