#!/usr/bin/env python3
"""Configuration validation script.

Usage: python scripts/validate_config.py [config_dir]
"""

import sys
from pathlib import Path

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from strategy_cp.config.loader import ConfigLoader
from strategy_cp.config.validation import ConfigValidator


def main():
    """Main validation function."""
    config_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    print("🔍 Validating control plane configuration...")

    loader = ConfigLoader.create(config_dir)
    all_valid = True

    print(f"\n📂 Config directory: {loader.config_dir}")
    try:
        errors = ConfigValidator.validate_config(loader.merge_config())
        if errors:
            print(f"❌ Found {len(errors)} validation errors:")
            for error in errors:
                print(f"  • {error.field}: {error.message} (value: {error.value})")
            all_valid = False
        else:
            print("✅ File configuration is valid")
    except Exception as e:
        print(f"❌ Error loading configuration: {e}")
        all_valid = False

    # Overrides must be rejected when out of range
    print("\n📋 Testing override validation...")
    bad_overrides = {
        "control_plane": {"staleness_threshold_seconds": -1},
        "workers": {"max_load_per_worker": 0},
    }
    errors = ConfigValidator.validate_config(loader.merge_config(bad_overrides))
    if len(errors) >= 2:
        print(f"✅ Invalid overrides rejected ({len(errors)} errors)")
    else:
        print("❌ Invalid overrides were not rejected")
        all_valid = False

    if all_valid:
        print("\n🎉 All configuration validation passed!")
        sys.exit(0)
    else:
        print("\n❌ Configuration validation failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
