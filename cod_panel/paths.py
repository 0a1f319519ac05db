#!/usr/bin/env python3
"""Centralized Path Management for the Panel Analysis.

Default locations used by the command line driver. Library code never
depends on them; every function that reads or writes takes explicit paths.

Directory Structure:
    project_root/
    ├── cod_panel/      # Python package
    ├── data/           # Raw input tables, one <name>.csv per dataset
    ├── output/         # Exported analysis artefacts
    └── config.json     # Optional configuration overrides

Usage:
    >>> from cod_panel.paths import DATA_DIR, OUTPUT_DIR
    >>> provider = CsvTableProvider(DATA_DIR)
"""

from pathlib import Path

# ============================================================================
# Root Directory
# ============================================================================

# Project root is parent of the cod_panel/ package directory
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# ============================================================================
# Input and Output Directories
# ============================================================================

DATA_DIR = PROJECT_ROOT / "data"
"""Raw country-year tables (primary cause-of-death table and covariates)."""

OUTPUT_DIR = PROJECT_ROOT / "output"
"""Exported normalized matrix, correlation tables, PCA and clusters."""

CONFIG_FILE = PROJECT_ROOT / "config.json"
"""Optional JSON file with AnalysisConfig overrides."""

DEFAULT_PRIMARY_TABLE = "causes_of_death"
"""Name of the primary table inside DATA_DIR (without .csv)."""


def ensure_output_dir(output_dir: Path = OUTPUT_DIR) -> Path:
    """Create the output directory if it does not exist and return it."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def validate_data_directory(data_dir: Path = DATA_DIR, primary: str = DEFAULT_PRIMARY_TABLE) -> bool:
    """Check that the data directory exists and holds the primary table.

    Returns:
        True if both exist, False otherwise.
    """
    data_dir = Path(data_dir)
    if not data_dir.exists():
        print(f"Warning: data directory not found: {data_dir}")
        return False
    if not (data_dir / f"{primary}.csv").exists():
        print(f"Warning: primary table {primary}.csv not found in {data_dir}")
        return False
    return True


if __name__ == "__main__":
    print("=" * 80)
    print("Configured Paths for Panel Analysis")
    print("=" * 80)
    print(f"\nProject Root: {PROJECT_ROOT}")
    print(f"  Data:   {DATA_DIR}")
    print(f"  Output: {OUTPUT_DIR}")
    print(f"  Config: {CONFIG_FILE}")
    print("✓ Data directory found" if validate_data_directory() else "✗ Data directory incomplete")
