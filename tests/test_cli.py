"""CLI tests against a simulated account."""

import json

import pytest
from click.testing import CliRunner

from agent_treasury import cli
from agent_treasury.config import MOR_TOKEN
from agent_treasury.local_ledger import LocalChain, LocalSafeFactory
from agent_treasury.units import to_wei

from conftest import MODULE, SAFE


@pytest.fixture
def cli_chain(owner_a, owner_b):
    chain = LocalChain(safe_address=SAFE, owners=[owner_a.address, owner_b.address], threshold=1)
    chain.fund(SAFE, to_wei("100"), MOR_TOKEN)
    chain.fund(SAFE, to_wei("1"))
    return chain


@pytest.fixture
def runner(monkeypatch, tmp_path, cli_chain, owner_a):
    monkeypatch.setenv("SAFE_ADDRESS", SAFE)
    monkeypatch.setenv("AGENT_TREASURY_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("SAFE_KEY_REF", bytes(owner_a.account.key).hex())
    monkeypatch.setenv("SAFE_SETTLE_SECONDS", "0")
    monkeypatch.setenv("SAFE_READ_BACKOFF", "0")
    monkeypatch.setattr(
        cli, "_make_ledger",
        lambda config, signer: cli_chain.ledger(signer.address if signer is not None else None),
    )
    monkeypatch.setattr(cli, "_make_relay", lambda config: None)
    return CliRunner()


def test_configure_then_rerun(runner, cli_chain, owner_a):
    result = runner.invoke(cli.main, ["configure"])
    assert result.exit_code == 0, result.output
    assert "Writes:   4" in result.output
    assert cli_chain.delegates[MODULE] == [owner_a.address]

    result = runner.invoke(cli.main, ["configure"])
    assert result.exit_code == 0, result.output
    assert "Writes:   0" in result.output


def test_configure_dry_run(runner, cli_chain):
    result = runner.invoke(cli.main, ["configure", "--dry-run", "--mor-allowance", "25"])
    assert result.exit_code == 0, result.output
    assert "dry run" in result.output
    assert cli_chain.writes == 0


def test_configure_refuses_multisig(runner, cli_chain):
    cli_chain.threshold = 2
    result = runner.invoke(cli.main, ["configure"])
    assert result.exit_code == 1
    assert "single-signer setup requires threshold 1" in result.output


def test_rejects_raw_key_on_argv(runner, owner_a):
    result = runner.invoke(cli.main, ["configure", "--owner-key", bytes(owner_a.account.key).hex()])
    assert result.exit_code != 0
    assert "Refusing --owner-key from argv" in result.output


def test_refill_and_pull_limits(runner, cli_chain, owner_a):
    assert runner.invoke(cli.main, ["configure"]).exit_code == 0

    result = runner.invoke(cli.main, ["refill"])
    assert result.exit_code == 0, result.output
    assert cli_chain.balance_of(owner_a.address, MOR_TOKEN) == to_wei("30")

    submitted = cli_chain.tx_count
    result = runner.invoke(cli.main, ["pull", "MOR", "60"])
    assert result.exit_code == 1
    assert "Pull denied" in result.output
    assert cli_chain.tx_count == submitted

    result = runner.invoke(cli.main, ["audit", "--event-type", "pull_denied"])
    assert result.exit_code == 0
    assert "pull_denied" in result.output


def test_propose_confirm_execute(runner, cli_chain, owner_b, monkeypatch):
    cli_chain.threshold = 2
    result = runner.invoke(cli.main, ["propose", "threshold", "1"])
    assert result.exit_code == 0, result.output
    assert "Waiting for 1 more signature(s)" in result.output
    commitment = result.output.split("proposed: ")[1].split()[0]

    monkeypatch.setenv("SAFE_KEY_REF", bytes(owner_b.account.key).hex())
    result = runner.invoke(cli.main, ["confirm", commitment])
    assert result.exit_code == 0, result.output
    assert "Ready to execute" in result.output

    result = runner.invoke(cli.main, ["pending", "--no-sync"])
    assert commitment in result.output

    result = runner.invoke(cli.main, ["execute", commitment])
    assert result.exit_code == 0, result.output
    assert cli_chain.threshold == 1


def test_status_json(runner, cli_chain):
    runner.invoke(cli.main, ["configure"])
    result = runner.invoke(cli.main, ["--log-level", "ERROR", "status", "--json"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["safe"]["threshold"] == 1
    assert payload["safe"]["allowanceModuleEnabled"] is True
    assert {a["token"] for a in payload["allowances"]} == {"MOR", "ETH"}


def test_missing_account_address(runner, monkeypatch):
    monkeypatch.delenv("SAFE_ADDRESS")
    result = runner.invoke(cli.main, ["status"])
    assert result.exit_code == 1
    assert "SAFE_ADDRESS" in result.output


def test_pull_prompts_for_the_agent_key(runner, monkeypatch, owner_a):
    monkeypatch.delenv("SAFE_KEY_REF")
    result = runner.invoke(cli.main, ["pull", "MOR", "1"], input=bytes(owner_a.account.key).hex() + "\n")
    assert "Agent (delegate) private key" in result.output
    assert "Owner private key" not in result.output


def test_confirm_prompts_for_an_owner_key(runner, monkeypatch, owner_b):
    monkeypatch.delenv("SAFE_KEY_REF")
    result = runner.invoke(cli.main, ["confirm", "0x" + "ab" * 32], input=bytes(owner_b.account.key).hex() + "\n")
    assert "Owner private key" in result.output
    assert result.exit_code == 1


@pytest.fixture
def safe_factory(runner, monkeypatch, owner_a):
    factory = LocalSafeFactory(sender=owner_a.address)
    factory.fund(owner_a.address, to_wei("0.01"))
    monkeypatch.delenv("SAFE_ADDRESS")
    monkeypatch.setattr(cli, "_make_factory", lambda config, signer: factory)
    monkeypatch.setattr(
        cli, "_make_ledger",
        lambda config, signer: factory.chains[config.safe_address].ledger(),
    )
    return factory


def test_deploy_dry_run_prints_plan(runner, safe_factory, owner_a):
    human = "0x" + "f0" * 20
    result = runner.invoke(
        cli.main,
        ["deploy", "--owner", human, "--agent", owner_a.address, "--dry-run", "--salt-nonce", "3"],
    )
    assert result.exit_code == 0, result.output
    assert "1-of-2" in result.output
    assert "Salt nonce: 3" in result.output
    assert "Initializer: 0x" in result.output
    assert safe_factory.chains == {}


def test_deploy_creates_verified_account(runner, safe_factory, owner_a):
    human = "0x" + "f0" * 20
    result = runner.invoke(cli.main, ["deploy", "--owner", human, "--threshold", "2"])
    assert result.exit_code == 0, result.output

    [(address, chain)] = safe_factory.chains.items()
    assert f"Deployed {address}" in result.output
    assert chain.threshold == 2
    assert owner_a.address in chain.owners


def test_deploy_agent_address_requires_dry_run(runner, safe_factory, owner_b):
    result = runner.invoke(cli.main, ["deploy", "--owner", "0x" + "f0" * 20, "--agent", owner_b.address])
    assert result.exit_code == 1
    assert "--agent only applies to --dry-run" in result.output
    assert safe_factory.chains == {}


def test_deploy_prompts_for_the_agent_key(runner, safe_factory, monkeypatch, owner_a):
    monkeypatch.delenv("SAFE_KEY_REF")
    result = runner.invoke(
        cli.main,
        ["deploy", "--owner", "0x" + "f0" * 20, "--dry-run"],
        input=bytes(owner_a.account.key).hex() + "\n",
    )
    assert result.exit_code == 0, result.output
    assert "Agent (delegate) private key" in result.output


def test_deploy_owner_from_config(runner, safe_factory, monkeypatch, owner_a):
    monkeypatch.setenv("SAFE_OWNER", "0x" + "f0" * 20)
    result = runner.invoke(cli.main, ["deploy", "--dry-run", "--salt-nonce", "1"])
    assert result.exit_code == 0, result.output
    assert "F0F0F0F0" in result.output.upper()

    monkeypatch.delenv("SAFE_OWNER")
    result = runner.invoke(cli.main, ["deploy", "--dry-run"])
    assert result.exit_code == 1
    assert "SAFE_OWNER" in result.output
