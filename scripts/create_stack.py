#!/usr/bin/env python3
"""
Stack creation script for a CoreOS cluster on AWS.

Creates a new Auto Scaling group via CloudFormation using the launch
configuration template at the repository root:
- Fetches a fresh etcd discovery URL
- Reads the registry credentials from the local docker config
- Shows the resulting stack parameters and asks for confirmation
- Runs `aws cloudformation create-stack`

Usage:
    python3 scripts/create_stack.py --name NewCluster --keypair whatever

Environment (or .env in the working directory):
    AWS_PROFILE         - AWS CLI profile (default: home)
    DISCOVERY_ENDPOINT  - etcd discovery service (default: https://discovery.etcd.io/new)
    DOCKER_CFG          - docker config file (default: ~/.dockercfg)
    DOCKER_REGISTRY     - registry host key in the docker config
    STACK_TEMPLATE      - CloudFormation template (default: repo template)
"""
import argparse
import json
import os
import subprocess
import sys
from http.client import HTTPException, HTTPSConnection
from urllib.parse import urlsplit

from dotenv import dotenv_values

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
REPO_DIR = os.path.dirname(SCRIPT_DIR)

DEFAULT_PROFILE = "home"
DEFAULT_DISCOVERY_ENDPOINT = "https://discovery.etcd.io/new"
DEFAULT_DOCKER_CFG = os.path.join(os.path.expanduser("~"), ".dockercfg")
DEFAULT_DOCKER_REGISTRY = "https://index.docker.io/v1/"
DEFAULT_TEMPLATE = os.path.join(REPO_DIR, "aws-launchconfig-coreos.template")

DEFAULT_SIZE = 5
DEFAULT_INSTANCE_TYPE = "m1.small"

HTTP_TIMEOUT = 30
KEY_WIDTH = 20


def load_settings(env_file=".env", environ=None):
    """Build the settings dict from an optional .env file and the environment."""
    values = dict(dotenv_values(env_file)) if os.path.exists(env_file) else {}
    values.update(os.environ if environ is None else environ)
    return {
        "profile": values.get("AWS_PROFILE") or DEFAULT_PROFILE,
        "discovery_endpoint": values.get("DISCOVERY_ENDPOINT") or DEFAULT_DISCOVERY_ENDPOINT,
        "docker_cfg": os.path.expanduser(values.get("DOCKER_CFG") or DEFAULT_DOCKER_CFG),
        "docker_registry": values.get("DOCKER_REGISTRY") or DEFAULT_DOCKER_REGISTRY,
        "template": os.path.abspath(values.get("STACK_TEMPLATE") or DEFAULT_TEMPLATE),
    }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UsageError(RuntimeError):
    """A required flag is missing or invalid."""


class TransportError(RuntimeError):
    """A network request or aws CLI call failed."""


class ReadError(RuntimeError):
    """A local file could not be read."""


class ParseError(RuntimeError):
    """A file or command produced malformed JSON."""


class ValidationError(RuntimeError):
    """Well-formed data is missing required fields."""


class UserAbort(RuntimeError):
    """The operator declined the confirmation prompt."""


# ---------------------------------------------------------------------------
# AWS CLI helper
# ---------------------------------------------------------------------------

def aws(settings, *args):
    """Run an aws CLI command and return its stdout.

    Raises TransportError with the captured error text when the command
    cannot be started or exits non-zero.
    """
    cmd = ["aws", "--profile", settings["profile"]] + list(args)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise TransportError(f"aws {' '.join(args[:2])}: {e}") from e
    if result.returncode != 0:
        error_msg = result.stderr.strip() or result.stdout.strip()
        raise TransportError(error_msg or f"aws exited with status {result.returncode}")
    return result.stdout


# ---------------------------------------------------------------------------
# Stack parameters
# ---------------------------------------------------------------------------

def fetch_discovery_url(endpoint, timeout=HTTP_TIMEOUT):
    """GET a new etcd discovery URL. Returns the response body verbatim."""
    url = urlsplit(endpoint)
    path = url.path or "/"
    if url.query:
        path += "?" + url.query
    try:
        conn = HTTPSConnection(url.netloc, timeout=timeout)
        try:
            conn.request("GET", path)
            resp = conn.getresponse()
            body = resp.read().decode("utf-8")
        finally:
            conn.close()
    except (OSError, HTTPException, UnicodeDecodeError) as e:
        raise TransportError(f"Failed to fetch discovery url: {e}") from e
    if resp.status >= 400:
        raise TransportError(
            f"Failed to fetch discovery url: HTTP {resp.status} from {endpoint}")
    return body


def read_docker_config(path, registry):
    """Return (email, auth) for one registry host in a docker config file."""
    try:
        with open(path) as f:
            data = f.read()
    except OSError as e:
        raise ReadError(f"Unable to read docker config from {path}: {e}") from e

    try:
        cfg = json.loads(data)
    except ValueError as e:
        raise ParseError(f"Failed to parse docker config {path}: {e}") from e

    entry = cfg.get(registry) if isinstance(cfg, dict) else None
    if not isinstance(entry, dict) or not entry.get("email") or not entry.get("auth"):
        raise ValidationError(f"Invalid docker config: {path}")
    return entry["email"], entry["auth"]


def build_params(args):
    """Return the flag-derived parameters, in stack order."""
    if not args.keypair:
        raise UsageError("Missing flag --keypair")
    try:
        size = int(args.size)
    except ValueError:
        raise UsageError(f"Invalid --size {args.size}: must be an integer") from None
    if size < 1:
        raise UsageError(f"Invalid --size {args.size}: must be at least 1")
    return [
        {"Key": "ClusterSize", "Value": str(size)},
        {"Key": "KeyPair", "Value": args.keypair},
        {"Key": "InstanceType", "Value": args.type},
    ]


def add_discovery_url(params, settings):
    params.append({
        "Key": "DiscoveryURL",
        "Value": fetch_discovery_url(settings["discovery_endpoint"]),
    })
    return params


def add_docker_config(params, settings):
    # Read both fields before appending so a bad config adds nothing.
    email, auth = read_docker_config(settings["docker_cfg"],
                                     settings["docker_registry"])
    params.append({"Key": "DockerCfgEmail", "Value": email})
    params.append({"Key": "DockerCfgToken", "Value": auth})
    return params


# ---------------------------------------------------------------------------
# Confirmation and stack creation
# ---------------------------------------------------------------------------

def format_params(params):
    return "\n".join(f"  {p['Key'].ljust(KEY_WIDTH)}{p['Value']}" for p in params)


def confirm(question, input_fn=None):
    """Ask a yes/no question. Only an exact "yes" or "y" proceeds."""
    try:
        answer = (input_fn or input)(question)
    except EOFError:
        answer = ""
    return answer in ("yes", "y")


def confirm_params(params, input_fn=None):
    print("New stack configuration:")
    print(format_params(params))
    if not confirm("Create a new stack with these params? ", input_fn):
        raise UserAbort("Aborted by user")


def stack_command(name, template, params):
    """Build the create-stack argument list (after the profile)."""
    return [
        "cloudformation", "create-stack",
        "--stack-name", name,
        "--template-body", f"file://{template}",
        "--parameters",
    ] + [f"ParameterKey={p['Key']},ParameterValue={p['Value']}" for p in params]


def create_stack(name, params, settings):
    """Run create-stack once. Prints stdout on success, stderr on failure."""
    try:
        stdout = aws(settings, *stack_command(name, settings["template"], params))
    except TransportError as e:
        print(e)
        raise TransportError(f"Error creating stack: {name}") from e
    print(stdout)
    return stdout


def run(args, settings, input_fn=None):
    """Run the whole pipeline. Each stage must succeed before the next."""
    if not args.name:
        raise UsageError("Missing flag --name")
    params = build_params(args)
    add_discovery_url(params, settings)
    add_docker_config(params, settings)
    confirm_params(params, input_fn)
    return create_stack(args.name, params, settings)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Create a new CoreOS Auto Scaling group with CloudFormation")
    parser.add_argument("--size", default=str(DEFAULT_SIZE),
                        help="How many instances to launch in the cluster")
    parser.add_argument("--name", default="",
                        help="Identifying name for the stack")
    parser.add_argument("--keypair", default="",
                        help="Name of an EC2 Key Pair to allow SSH access to the instances")
    parser.add_argument("--type", default=DEFAULT_INSTANCE_TYPE,
                        help="EC2 PV instance type (m1.small, m3.medium, etc.)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    settings = load_settings()
    try:
        run(args, settings)
    except UsageError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except RuntimeError as e:
        print(f"FAILED: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
