"""
Configuration Validation Module

Validates app.yaml and policy.yaml against the Pydantic schemas in
core/config.py, then runs cross-file sanity checks. Runs before startup so a
bad config never reaches the first cycle.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import List

import yaml
from pydantic import ValidationError

from core.config import AppConfig, PolicyConfig, load_yaml_file

logger = logging.getLogger(__name__)


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return message

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    path = config_dir / filename
    try:
        schema(**load_yaml_file(path))
        logger.info(f"{filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {_format_yaml_error(path, e)}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppConfig)


def validate_policy(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "policy.yaml", PolicyConfig)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-field consistency checks (schemas already passed).

    Detects:
    - Execution with no way to fund or broadcast a liquidation
    - Execution without a daily loss ceiling
    - Overlapping token lists
    - Index sources for protocols that are not enabled
    - A Venus comptroller configured for a different chain
    """
    errors = []
    app = AppConfig(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicyConfig(**load_yaml_file(config_dir / "policy.yaml"))

    enabled = [name for name in ("gmx", "aave", "venus") if getattr(app.protocols, name) and getattr(app.protocols, name).enabled]
    if not enabled:
        errors.append("CONTRADICTION: no protocol enabled under protocols (gmx/aave/venus)")

    overlap = set(policy.risk.token_whitelist) & set(policy.risk.token_blacklist)
    if overlap:
        errors.append(f"CONTRADICTION: tokens both whitelisted and blacklisted: {sorted(overlap)}")

    for source in app.indexer.sources:
        if source.protocol not in enabled:
            errors.append(f"CONTRADICTION: indexer source for {source.protocol} but protocols.{source.protocol} is disabled")

    venus = app.protocols.venus
    if venus is not None and venus.enabled and venus.chain_id != app.chain.chain_id:
        errors.append(
            f"MISMATCH: protocols.venus.chain_id ({venus.chain_id}) differs from chain.chain_id ({app.chain.chain_id})"
        )

    if app.app.execution_enabled:
        if not app.relay.enabled and not app.relay.fallback_to_public:
            errors.append(
                "UNSAFE: execution_enabled=true but relay is disabled and fallback_to_public=false "
                "(no broadcast channel)"
            )
        if policy.risk.max_daily_loss_usd <= 0:
            errors.append("UNSAFE: execution_enabled=true without risk.max_daily_loss_usd > 0")
        aave = app.protocols.aave
        if (aave is not None and aave.enabled and policy.execution.mode == "flash_loan"
                and not aave.flash_liquidator):
            errors.append("MISSING: execution.mode=flash_loan requires protocols.aave.flash_liquidator")
        if venus is not None and venus.enabled and policy.execution.mode == "flash_loan":
            errors.append("UNSUPPORTED: protocols.venus liquidations need execution.mode=wallet")

    if policy.risk.min_profit_usd > policy.risk.max_position_size_usd:
        errors.append(
            f"CONTRADICTION: risk.min_profit_usd ({policy.risk.min_profit_usd}) exceeds "
            f"max_position_size_usd ({policy.risk.max_position_size_usd})"
        )

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors: List[str] = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks only if schema validation passed
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")
    return all_errors


def main() -> None:
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)


if __name__ == "__main__":
    main()
