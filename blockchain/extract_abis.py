#!/usr/bin/env python3
"""
Extract ABIs from Hardhat build artifacts and save to blockchain_abis/.

Usage:
    npx hardhat compile
    python blockchain/extract_abis.py --artifacts ../contracts/artifacts
"""
import argparse
import json
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent

# Contract name -> artifact path relative to the Hardhat artifacts directory
CONTRACTS = {
    "ProductNFT": "contracts/ProductNFT.sol/ProductNFT.json",
    "ProductRegistry": "contracts/ProductRegistry.sol/ProductRegistry.json",
    "Tracking": "contracts/Tracking.sol/Tracking.json",
}


def extract_abis(artifacts_dir: Path, abi_dir: Path = ROOT / "blockchain_abis") -> dict:
    """
    Copy the ``abi`` array of each known artifact to ``abi_dir/<name>.json``.

    Returns:
        {contract_name: number of ABI entries written}
    """
    abi_dir.mkdir(exist_ok=True)
    written = {}

    print("Extracting ABIs from Hardhat build artifacts...\n")

    for contract_name, artifact_path in CONTRACTS.items():
        full_path = artifacts_dir / artifact_path

        if not full_path.exists():
            print(f"❌ {contract_name}: Artifact not found at {full_path}")
            continue

        with open(full_path, 'r') as f:
            artifact = json.load(f)

        abi = artifact.get('abi', [])
        if not abi:
            print(f"⚠️  {contract_name}: No ABI found in artifact")
            continue

        output_path = abi_dir / f"{contract_name}.json"
        with open(output_path, 'w') as f:
            json.dump(abi, f, indent=2)

        written[contract_name] = len(abi)
        print(f"✅ {contract_name}: Extracted {len(abi)} ABI entries → {output_path}")

    print(f"\n✅ ABI extraction complete. Files saved to: {abi_dir}")
    return written


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Extract contract ABIs from Hardhat artifacts")
    parser.add_argument("--artifacts", type=Path, default=ROOT / "artifacts", help="Hardhat artifacts directory")
    parser.add_argument("--output", type=Path, default=ROOT / "blockchain_abis", help="Output directory")
    args = parser.parse_args()
    extract_abis(args.artifacts, args.output)
