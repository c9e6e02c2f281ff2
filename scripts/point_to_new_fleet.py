#!/usr/bin/env python3
"""
Repoint DNS at a new fleet's load balancer.

Updates the ALIAS records for the root domain and the wildcard subdomain of
every Route53 hosted zone so they point at one ELB. The ELB is the first one
whose canonical hosted zone name contains the given substring
(case-insensitive).

Changes are applied one at a time, in zone order. The first failure stops
the run: zones before it are already updated, the rest are untouched.

Usage:
    python3 scripts/point_to_new_fleet.py NewCluster

Environment (or .env in the working directory):
    AWS_PROFILE  - AWS CLI profile (default: home)
"""
import argparse
import json
import os
import subprocess
import sys

from dotenv import dotenv_values

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_PROFILE = "home"

# Domain prefixes to map to the ELB: root name, then wildcard.
PREFIXES = ["", "*."]

CHANGE_COMMENT = "Updating ELB target"


def load_settings(env_file=".env", environ=None):
    """Build the settings dict from an optional .env file and the environment."""
    values = dict(dotenv_values(env_file)) if os.path.exists(env_file) else {}
    values.update(os.environ if environ is None else environ)
    return {"profile": values.get("AWS_PROFILE") or DEFAULT_PROFILE}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TransportError(RuntimeError):
    """An aws CLI call could not be run or exited non-zero."""


class ParseError(RuntimeError):
    """An aws CLI call returned malformed JSON."""


# ---------------------------------------------------------------------------
# AWS CLI helpers
# ---------------------------------------------------------------------------

def aws(settings, *args):
    """Run an aws CLI command and return its stdout."""
    cmd = ["aws", "--profile", settings["profile"]] + list(args)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise TransportError(str(e)) from e
    if result.returncode != 0:
        error_msg = result.stderr.strip() or result.stdout.strip()
        raise TransportError(error_msg or f"aws exited with status {result.returncode}")
    return result.stdout


def aws_json(settings, *args):
    """Run an aws CLI command and return parsed JSON."""
    stdout = aws(settings, *args)
    try:
        return json.loads(stdout)
    except ValueError as e:
        raise ParseError(f"aws {' '.join(args)}: invalid JSON output: {e}") from e


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def list_load_balancers(settings):
    data = aws_json(settings, "elb", "describe-load-balancers")
    try:
        return data["LoadBalancerDescriptions"]
    except (KeyError, TypeError) as e:
        raise ParseError("describe-load-balancers: missing LoadBalancerDescriptions") from e


def find_load_balancer(elbs, target):
    """Return the first ELB whose canonical name contains target, or None."""
    target = target.lower()
    for elb in elbs:
        if target in elb["CanonicalHostedZoneName"].lower():
            return elb
    return None


def list_hosted_zones(settings):
    data = aws_json(settings, "route53", "list-hosted-zones")
    try:
        return data["HostedZones"]
    except (KeyError, TypeError) as e:
        raise ParseError("list-hosted-zones: missing HostedZones") from e


# ---------------------------------------------------------------------------
# Record updates
# ---------------------------------------------------------------------------

def change_batch(name, elb):
    """UPSERT of an alias A record pointing name at the ELB."""
    return {
        "Comment": CHANGE_COMMENT,
        "Changes": [
            {
                "Action": "UPSERT",
                "ResourceRecordSet": {
                    "Name": name,
                    "Type": "A",
                    "AliasTarget": {
                        "HostedZoneId": elb["CanonicalHostedZoneNameID"],
                        "DNSName": elb["CanonicalHostedZoneName"],
                        "EvaluateTargetHealth": False,
                    },
                },
            }
        ],
    }


def build_commands(zones, elb):
    """One change-resource-record-sets argument list per zone and prefix."""
    commands = []
    for zone in zones:
        for prefix in PREFIXES:
            commands.append([
                "route53", "change-resource-record-sets",
                "--hosted-zone-id", zone["Id"],
                "--change-batch", json.dumps(change_batch(prefix + zone["Name"], elb)),
            ])
    return commands


def apply_commands(settings, commands):
    """Run commands strictly in order, stopping at the first failure.

    Returns the number of commands applied. On failure the TransportError
    names the failing command; everything before it has been applied.
    """
    pending = list(commands)
    applied = 0
    while pending:
        cmd = pending.pop(0)
        print(".", end="", flush=True)
        try:
            aws(settings, *cmd)
        except TransportError as e:
            print()
            raise TransportError(
                f"Error executing command: aws {' '.join(cmd)}: {e}") from e
        applied += 1
    print(" Done")
    return applied


def confirm(question, input_fn=None):
    """Ask a yes/no question. Only an exact "yes" or "y" proceeds."""
    try:
        answer = (input_fn or input)(question)
    except EOFError:
        answer = ""
    return answer in ("yes", "y")


# ---------------------------------------------------------------------------
# Main flow
# ---------------------------------------------------------------------------

def point_to_new_fleet(target, settings, input_fn=None):
    """Repoint every hosted zone at the ELB matching target.

    Returns the number of record changes applied (0 when nothing matched
    or the operator declined).
    """
    try:
        elbs = list_load_balancers(settings)
    except (TransportError, ParseError) as e:
        raise type(e)(f"Error fetching load balancer details: {e}") from e

    elb = find_load_balancer(elbs, target)
    if elb is None:
        print(f'No ELBs match desired name: "{target.lower()}"', file=sys.stderr)
        print("Available ELBs:")
        for other in elbs:
            print(f"   {other['CanonicalHostedZoneName']}")
        return 0

    print("Found Matching ELB:")
    print(f"   {elb['CanonicalHostedZoneName']}")

    try:
        zones = list_hosted_zones(settings)
    except (TransportError, ParseError) as e:
        raise type(e)(f"Error fetching hosted zones: {e}") from e

    print("Fetching zone details")
    for zone in zones:
        print(f"   {zone['Name']}")

    if not confirm("Update ALIAS records with target ELB? ", input_fn):
        print("Aborting...")
        return 0

    print("Proceeding to update resource record sets...", end="", flush=True)
    return apply_commands(settings, build_commands(zones, elb))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Point root and wildcard ALIAS records of all hosted "
                    "zones at a new ELB")
    parser.add_argument("target",
                        help="Substring identifying the ELB (case-insensitive)")
    args = parser.parse_args(argv)

    try:
        point_to_new_fleet(args.target, load_settings())
    except TransportError as e:
        print(e, file=sys.stderr)
    except ParseError as e:
        print(e, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
