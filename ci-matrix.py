# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pyyaml",
# ]
# ///

import argparse
import json
import pathlib
from typing import Any, Optional

import yaml

CI_TARGETS_YAML = pathlib.Path(__file__).parent / "builder" / "targets.yml"
CI_EXTRA_SKIP_LABELS = ["documentation"]


def parse_labels(labels: Optional[str]) -> dict[str, set[str]]:
    """Parse labels into a dict of category filters."""
    if not labels:
        return {}

    result: dict[str, set[str]] = {
        "arch": set(),
        "platform": set(),
        "directives": set(),
    }

    for label in labels.split(","):
        label = label.strip()

        # Handle special labels
        if label in CI_EXTRA_SKIP_LABELS:
            result["directives"].add("skip")
            continue

        if not label or ":" not in label:
            continue

        category, value = label.split(":", 1)

        if category == "ci":
            category = "directives"

        if category in result:
            result[category].add(value)

    return result


def should_include_entry(entry: dict[str, str], filters: dict[str, set[str]]) -> bool:
    """Check if an entry satisfies the label filters."""
    if filters.get("directives") and "skip" in filters["directives"]:
        return False

    if filters.get("arch") and entry["arch"] not in filters["arch"]:
        return False

    if filters.get("platform") and entry["platform"] not in filters["platform"]:
        return False

    return True


def generate_matrix_entries(
    config: dict[str, Any],
    label_filters: Optional[dict[str, set[str]]] = None,
) -> list[dict[str, str]]:
    label_filters = label_filters or {}

    matrix_entries = []

    for arch, target_config in sorted(config.items()):
        entry = {
            "arch": arch,
            "platform": target_config["platform"],
            "platform_slug": target_config["platform"].replace("/", "_"),
            "runner": target_config["runner"],
        }

        matrix_entries.append(entry)

    if label_filters:
        matrix_entries = [
            entry
            for entry in matrix_entries
            if should_include_entry(entry, label_filters)
        ]

    return matrix_entries


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Generate a JSON matrix for building builder images in CI"
    )
    parser.add_argument(
        "--labels",
        help="Comma-separated list of labels to filter by (e.g., 'arch:aarch64'), all must match.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    labels = parse_labels(args.labels)

    with open(CI_TARGETS_YAML, "r") as f:
        config = yaml.safe_load(f)

    matrix = {"include": generate_matrix_entries(config, labels)}

    print(json.dumps(matrix))


if __name__ == "__main__":
    main()
