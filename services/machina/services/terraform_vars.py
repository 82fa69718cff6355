"""Terraform variable sets for the provider modules.

Builds the variables written to a machine's terraform.tfvars.json from the
machine record, the decrypted account credentials and the chosen firewall,
SSH key and bootstrap inputs. Narration for the deployment log is returned
alongside the variables so the builder stays free of I/O.
"""

from dataclasses import dataclass, field
from typing import Any

from machina.config import settings
from machina.db.models import (
    BootstrapProfile,
    FirewallProfile,
    LogLevel,
    Machine,
    SSHKey,
)
from machina.services.provider_client import UnsupportedProviderError

CLOUD_INIT_PREVIEW_LINES = 20


class MissingCredentialFieldError(ValueError):
    """Decrypted credentials lack a field the provider module needs."""


@dataclass
class VariableSet:
    module: str
    variables: dict[str, Any]
    notes: list[tuple[LogLevel, str]] = field(default_factory=list)


def format_port_range(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"


def firewall_inbound_rules(
    profile: FirewallProfile | None, default_sources: list[str]
) -> tuple[list[dict[str, Any]], str]:
    """Translate a firewall profile to provider inbound rules.

    Falls back to SSH-only when no profile (or an empty one) is chosen.
    Returns the rules and a log line describing what will be applied.
    """
    if profile is not None and profile.rules:
        rules = [
            {
                "protocol": rule["protocol"],
                "port_range": format_port_range(
                    int(rule["port_range_start"]), int(rule["port_range_end"])
                ),
                "source_addresses": rule.get("source_addresses") or list(default_sources),
            }
            for rule in profile.rules
            if rule.get("direction") == "inbound"
        ]
        return rules, (
            f'Firewall profile "{profile.name}" will be applied with {len(rules)} inbound rules'
        )

    rules = [{"protocol": "tcp", "port_range": "22", "source_addresses": list(default_sources)}]
    return rules, "No firewall profile selected, applying default SSH-only rules"


def render_bootstrap_template(template: str, machine_id: str, server_url: str) -> str:
    return template.replace("{{MACHINE_ID}}", machine_id).replace("{{SERVER_URL}}", server_url)


def cloud_init_preview(user_data: str) -> str:
    lines = user_data.split("\n")
    preview = "\n".join(lines[:CLOUD_INIT_PREVIEW_LINES])
    if len(lines) > CLOUD_INIT_PREVIEW_LINES:
        preview += "\n... (truncated)"
    return f"Cloud-init preview:\n{preview}"


def build_digitalocean_variables(
    machine: Machine,
    credentials: dict[str, Any],
    firewall_profile: FirewallProfile | None = None,
    ssh_keys: list[SSHKey] | None = None,
    bootstrap_profile: BootstrapProfile | None = None,
    server_url: str | None = None,
    default_sources: list[str] | None = None,
) -> VariableSet:
    notes: list[tuple[LogLevel, str]] = []

    api_token = credentials.get("api_token")
    if not api_token:
        raise MissingCredentialFieldError("Missing api_token in credentials")

    rules, firewall_note = firewall_inbound_rules(
        firewall_profile,
        default_sources or settings.provisioning.default_source_addresses,
    )
    notes.append((LogLevel.INFO, firewall_note))

    ssh_key_ids: list[str] = []
    for key in ssh_keys or []:
        provider_key_id = (key.provider_key_ids or {}).get("digitalocean")
        if provider_key_id:
            ssh_key_ids.append(str(provider_key_id))
            notes.append(
                (LogLevel.INFO, f'SSH key "{key.name}" will be attached (DO ID: {provider_key_id})')
            )
        else:
            notes.append(
                (LogLevel.WARN, f'SSH key "{key.name}" not synced to DigitalOcean - skipping')
            )

    user_data = ""
    if bootstrap_profile is not None and bootstrap_profile.cloud_init_template:
        user_data = render_bootstrap_template(
            bootstrap_profile.cloud_init_template,
            machine.id,
            server_url or settings.provisioning.public_server_url,
        )
        notes.append((LogLevel.INFO, "Bootstrap profile cloud-init will be applied to the machine"))
        notes.append((LogLevel.DEBUG, cloud_init_preview(user_data)))

    variables = {
        "do_token": api_token,
        "name": machine.name,
        "machine_id": machine.id,
        "region": machine.region,
        "size": machine.size,
        "image": machine.image,
        "ssh_keys": ssh_key_ids,
        "tags": [f"{k}:{v}" for k, v in (machine.tags or {}).items()],
        "user_data": user_data,
        "firewall_enabled": True,
        "firewall_inbound_rules": rules,
    }
    return VariableSet(module="digitalocean", variables=variables, notes=notes)


def build_variables(
    provider_type: str, machine: Machine, credentials: dict[str, Any], **inputs: Any
) -> VariableSet:
    """Variable set for the machine's provider module."""
    if provider_type == "digitalocean":
        return build_digitalocean_variables(machine, credentials, **inputs)
    raise UnsupportedProviderError(f"Unsupported provider: {provider_type}")


def known_additions_summary(provider_type: str) -> dict[str, Any]:
    """Plan summary of the resources a fresh create adds (droplet + firewall).

    Used when the saved plan cannot be rendered as JSON.
    """
    if provider_type != "digitalocean":
        return {
            "resources_to_add": 0,
            "resources_to_change": 0,
            "resources_to_destroy": 0,
            "resource_changes": [],
        }
    changes = [
        {
            "address": f"{resource_type}.main",
            "type": resource_type,
            "name": "main",
            "actions": ["create"],
        }
        for resource_type in ("digitalocean_droplet", "digitalocean_firewall")
    ]
    return {
        "resources_to_add": len(changes),
        "resources_to_change": 0,
        "resources_to_destroy": 0,
        "resource_changes": changes,
    }
