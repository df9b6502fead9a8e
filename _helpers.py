"""Shared helpers for the CloudTrail Projection Updater scripts."""

import json
import subprocess
import sys
from typing import Dict, List, Optional, Tuple


def install_dependencies(packages: List[str]):
    """Install required packages if not already installed."""
    for package in packages:
        try:
            __import__(package)
        except ImportError:
            print(f"Installing required package: {package}...")
            try:
                subprocess.check_call(
                    ["pip3", "install", "--user", package],
                    stdout=subprocess.DEVNULL,
                )
                print(f"  {package} installed successfully.")
            except subprocess.CalledProcessError:
                try:
                    subprocess.check_call(
                        ["pip3", "install", "--break-system-packages", package],
                        stdout=subprocess.DEVNULL,
                    )
                    print(f"  {package} installed successfully.")
                except subprocess.CalledProcessError as e:
                    print(f"  Failed to install {package}: {e}")
                    print(f"  Please run: pip3 install {package}")
                    sys.exit(1)


def run_aws(args: List[str], region: Optional[str] = None) -> Tuple[bool, str]:
    """Run an AWS CLI command. Returns (success, stdout_or_stderr)."""
    cmd = ["aws"] + args
    if region:
        cmd += ["--region", region]
    cmd += ["--output", "json", "--no-cli-pager"]
    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode == 0:
        return True, result.stdout.strip()
    return False, result.stderr.strip()


def get_default_region() -> Optional[str]:
    """Get the default region from AWS CLI config."""
    result = subprocess.run(
        ["aws", "configure", "get", "region"],
        capture_output=True,
        text=True,
    )
    if result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()
    return None


def get_stack_outputs(stack_name: str, region: str) -> Optional[Dict[str, str]]:
    """Get CloudFormation stack outputs as a dict."""
    ok, output = run_aws(
        ["cloudformation", "describe-stacks", "--stack-name", stack_name],
        region=region,
    )
    if not ok:
        return None
    try:
        stack = json.loads(output).get("Stacks", [{}])[0]
        return {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}
    except (json.JSONDecodeError, IndexError, KeyError):
        return None


def get_stack_resource_id(
    stack_name: str, logical_id: str, region: str
) -> Optional[str]:
    """Get the physical ID of a stack resource, e.g. a Lambda function name."""
    ok, output = run_aws(
        [
            "cloudformation",
            "describe-stack-resource",
            "--stack-name",
            stack_name,
            "--logical-resource-id",
            logical_id,
        ],
        region=region,
    )
    if not ok:
        return None
    try:
        detail = json.loads(output)["StackResourceDetail"]
        return detail["PhysicalResourceId"]
    except (json.JSONDecodeError, KeyError):
        return None
