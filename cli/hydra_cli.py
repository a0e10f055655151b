#!/usr/bin/env python3
"""
Hydra CLI - drive local Hydra Head parties: head commands, UTXOs, transactions

Usage:
  # Open a head between alice and bob
  python -m cli.hydra_cli action init alice bob

  # Commit a wallet UTXO from alice into an initializing head
  python -m cli.hydra_cli commit alice <txHash#ix>

  # Send a UTXO from alice's view to carol, splitting it in half
  python -m cli.hydra_cli build-tx --from alice --to carol --utxo-ref <txHash#ix> --half --submit

  # With debug mode enabled (dumps every HTTP request/response)
  python -m cli.hydra_cli --debug status alice
"""
import asyncio
import argparse
import logging
import sys
import os
import json

# Add project root directory to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hydrahead.errors import HydraError, InvalidInput
from hydrahead.models import BuildTxRequest, lovelace_to_ada, split_lovelace
from hydrahead.services import key_store
from hydrahead.services.confirmation_tracker import ConfirmationTracker
from hydrahead.services.head_service import create_head_service_with_debug
from hydrahead.services.tx_pipeline import TransactionPipeline

# Global variable to store head_service instance
head_service = None


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _fail(e: Exception):
    if isinstance(e, HydraError):
        print(f"✗ Error [{e.kind}]: {e.message}")
        hint = getattr(e, "hint", None)
        if hint:
            print(f"  {hint}")
        stderr = getattr(e, "stderr", None)
        if stderr:
            print(f"\nCommand: {' '.join(e.command)}")
            print(f"stderr:\n{stderr}")
    else:
        print(f"✗ Error: {e}")
    sys.exit(1)


async def cmd_address(party: str):
    try:
        address = await head_service.directory.address_of(party)
        print(address)
    except Exception as e:
        _fail(e)


def cmd_vkey(party: str):
    try:
        print(head_service.directory.hydra_vkey_hex(party))
    except Exception as e:
        _fail(e)


def cmd_keygen_hydra(party: str):
    try:
        result = key_store.generate_hydra_keypair(head_service.directory.party_dir(party))
        print(f"✓ Hydra key pair created for {party}")
        print(f"  Verification key: {result['vkey']}")
        print(f"  Saved to:         {result['path']}")
    except Exception as e:
        _fail(e)


async def cmd_status(party: str, port: int = None):
    try:
        status = await head_service.get_head_status(party, port=port)
        print(f"{party}: {status.tag}")
    except Exception as e:
        _fail(e)


async def cmd_utxos(party: str, port: int = None):
    try:
        utxos = await head_service.get_snapshot_utxo(party, port=port)
        print(f"=== {party}'s view of the head ({len(utxos)} UTXOs) ===")
        for ref, utxo in utxos.items():
            print(f"{ref}")
            print(f"  Address: {utxo.address}")
            print(f"  Value:   {lovelace_to_ada(utxo.lovelace)}")
    except Exception as e:
        _fail(e)


async def cmd_action(action: str, parties: list, other_parties: list = None):
    try:
        results = await head_service.run_action(action, parties, other_parties=other_parties)
    except Exception as e:
        _fail(e)
        return

    failed = False
    for party, result in results.items():
        mark = "✓" if result.ok else "✗"
        print(f"{mark} {party}: {result.message}")
        if result.note:
            print(f"    {result.note}")
        if result.response is not None:
            print(f"    Response: {json.dumps(result.response, default=str)}")
        failed = failed or not result.ok
    if failed:
        sys.exit(1)


async def cmd_build_tx(args):
    try:
        utxos = await head_service.get_snapshot_utxo(args.from_party)
        utxo = utxos.get(args.utxo_ref)
        if utxo is None:
            raise InvalidInput(f"UTXO {args.utxo_ref} not found in {args.from_party}'s head snapshot")

        target_address = args.target_address or await head_service.directory.address_of(args.to_party)
        request = BuildTxRequest(
            fromParty=args.from_party,
            toParty=args.to_party,
            utxoRef=args.utxo_ref,
            utxo=utxo,
            targetAddress=target_address,
            sendHalf=args.half,
        )
        pipeline = TransactionPipeline(head_service.directory)
        result = await pipeline.build_transaction(request)

        print("=" * 70)
        print("✓ Transaction built and signed")
        print("=" * 70)
        print(f"Owner:    {result.actual_owner}" + ("" if result.owner_verified else " (assumed)"))
        print(f"To:       {result.to_party} ({result.target_address})")
        print(f"Amount:   {result.amount}")
        if result.change:
            print(f"Change:   {result.change}")
        print(f"\nCBOR:\n{result.transaction}")

        if not args.submit:
            return

        pending = None
        if args.track:
            tracker = ConfirmationTracker(head_service.get_balance)
            sent, _ = split_lovelace(utxo.lovelace, args.half)
            # Baseline before submitting, the head applies the transaction right away
            pending = await tracker.snapshot(result.actual_owner, [args.to_party], sent)

        response = await head_service.submit_transaction(result.actual_owner, result.transaction)
        print("\n✓ Submitted to head")
        _print_json(response)

        if pending is not None:
            outcome = await tracker.start(pending).wait()
            print(f"\nConfirmation: {outcome.status.value} after {outcome.polls} polls")
    except Exception as e:
        _fail(e)


async def cmd_submit(party: str, cbor_hex: str):
    try:
        response = await head_service.submit_transaction(party, cbor_hex)
        print("✓ Transaction submitted")
        _print_json(response)
    except Exception as e:
        _fail(e)


async def cmd_commit(party: str, utxo_refs: list, port: int = None):
    try:
        result = await head_service.commit(party, utxo_refs, port=port)
        print(f"✓ Committed {result.amount} from {party} into the head")
        for ref in result.utxo_refs:
            print(f"  {ref}")
        if result.tx_id:
            print(f"Tx ID:    {result.tx_id}")
        if result.submit_output:
            print(result.submit_output)
    except Exception as e:
        _fail(e)


async def cmd_history(party: str):
    try:
        entries = await head_service.get_history(party)
        print(f"=== {party} transaction history ({len(entries)}) ===")
        for entry in entries:
            snapshot = entry.snapshot_number if entry.snapshot_number is not None else "-"
            print(f"[{entry.type:9}] snapshot {snapshot}  {entry.tx_id}")
    except Exception as e:
        _fail(e)


def main(argv=None):
    """Entry point. Supports passing a custom argument list for debugging or reuse.

    Examples:
        main(["status", "alice"])  # Direct invocation from code

    If argv is not provided, the default behavior uses sys.argv.
    """
    global head_service

    parser = argparse.ArgumentParser(
        description="Hydra CLI - local Hydra Head party tool"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode to log all HTTP requests and responses",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    address_parser = subparsers.add_parser("address", help="Show a party's payment address")
    address_parser.add_argument("party")

    vkey_parser = subparsers.add_parser("vkey", help="Show a party's hydra verification key")
    vkey_parser.add_argument("party")

    keygen_parser = subparsers.add_parser("keygen-hydra", help="Generate a hydra key pair for a party")
    keygen_parser.add_argument("party")

    status_parser = subparsers.add_parser("status", help="Show head status seen by a party")
    status_parser.add_argument("party")
    status_parser.add_argument("-p", "--port", type=int, help="Node API port override")

    utxos_parser = subparsers.add_parser("utxos", help="List head UTXOs seen by a party")
    utxos_parser.add_argument("party")
    utxos_parser.add_argument("-p", "--port", type=int, help="Node API port override")

    action_parser = subparsers.add_parser("action", help="Send init/close/fanout to parties")
    action_parser.add_argument("action", choices=["init", "close", "fanout"])
    action_parser.add_argument("parties", nargs="+", help="Parties to send the command to")
    action_parser.add_argument(
        "--other-parties",
        help="Comma-separated parties whose vkeys go into Init (defaults to the selection)",
    )

    build_parser = subparsers.add_parser("build-tx", help="Build and sign a head transaction")
    build_parser.add_argument("--from", dest="from_party", required=True, help="Assumed UTXO owner")
    build_parser.add_argument("--to", dest="to_party", required=True, help="Recipient party")
    build_parser.add_argument("--utxo-ref", required=True, help="txHash#index")
    build_parser.add_argument("--target-address", help="Fallback recipient address")
    build_parser.add_argument("--half", action="store_true", help="Send half, return the rest as change")
    build_parser.add_argument("--submit", action="store_true", help="Submit to the owner's head")
    build_parser.add_argument("--track", action="store_true", help="Wait for balances to reflect the send")

    submit_parser = subparsers.add_parser("submit", help="Submit a signed transaction")
    submit_parser.add_argument("party")
    submit_parser.add_argument("cbor_hex")

    commit_parser = subparsers.add_parser("commit", help="Commit layer-one UTXOs into the head")
    commit_parser.add_argument("party")
    commit_parser.add_argument("utxo_refs", nargs="+", help="txHash#index of wallet UTXOs to commit")
    commit_parser.add_argument("-p", "--port", type=int, help="Node API port override")

    history_parser = subparsers.add_parser("history", help="Show confirmed and pending transactions")
    history_parser.add_argument("party")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Create head_service instance based on debug flag
    head_service = create_head_service_with_debug(debug_mode=args.debug)

    if args.debug:
        print("\n🔍 Debug mode enabled: all HTTP requests and responses will be logged\n")

    # Execute command
    if args.command == "address":
        asyncio.run(cmd_address(args.party))
    elif args.command == "vkey":
        cmd_vkey(args.party)
    elif args.command == "keygen-hydra":
        cmd_keygen_hydra(args.party)
    elif args.command == "status":
        asyncio.run(cmd_status(args.party, args.port))
    elif args.command == "utxos":
        asyncio.run(cmd_utxos(args.party, args.port))
    elif args.command == "action":
        others = [p.strip() for p in args.other_parties.split(",")] if args.other_parties else None
        asyncio.run(cmd_action(args.action, args.parties, others))
    elif args.command == "build-tx":
        asyncio.run(cmd_build_tx(args))
    elif args.command == "submit":
        asyncio.run(cmd_submit(args.party, args.cbor_hex))
    elif args.command == "commit":
        asyncio.run(cmd_commit(args.party, args.utxo_refs, args.port))
    elif args.command == "history":
        asyncio.run(cmd_history(args.party))


if __name__ == "__main__":
    main()
