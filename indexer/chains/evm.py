"""
EVM chain registry for the escrow indexer.

Chains are identified by their EIP-155 chain id. The registry only carries
what the indexer needs to label and bootstrap per-chain statistics; log
delivery (RPC endpoints, block ranges) is owned by the sync engine.
"""

from typing import Dict, Iterable, List
from dataclasses import dataclass

from ..core import MAX_CHAIN_ID


@dataclass
class ChainInfo:
    """Static description of a supported chain."""
    chain_id: int
    name: str


# Known deployments of the cross-chain escrow factory
CHAINS: Dict[int, ChainInfo] = {
    8453: ChainInfo(chain_id=8453, name="base"),
    42793: ChainInfo(chain_id=42793, name="etherlink"),
}

# CrossChainEscrowFactory deployed at the same address on every chain
FACTORY_ADDRESS = "0x75ee15F6BfDd06Aee499ed95e8D92a114659f4d1"

# EscrowSrc implementation cloned by the factory (EIP-1167)
SRC_IMPLEMENTATION = "0x77CC1A51dC5855bcF0d9f1c1FceaeE7fb855a535"

DEFAULT_CHAIN_IDS = [8453, 42793]


def chain_name(chain_id: int) -> str:
    """Human-readable chain name, falling back to the numeric id."""
    info = CHAINS.get(chain_id)
    return info.name if info else str(chain_id)


def parse_chain_ids(value: str) -> List[int]:
    """
    Parse a comma separated chain id list ("8453,42793").

    Names from the registry are accepted as well ("base,etherlink").
    """
    by_name = {info.name: info.chain_id for info in CHAINS.values()}
    result = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if part in by_name:
            result.append(by_name[part])
        else:
            try:
                chain_id = int(part)
            except ValueError:
                raise ValueError(f"Unknown chain: {part}")
            if not 0 < chain_id <= MAX_CHAIN_ID:
                raise ValueError(f"Chain id out of range: {part}")
            result.append(chain_id)
    return result


def describe_chains(chain_ids: Iterable[int]) -> str:
    return ", ".join(f"{chain_name(c)} ({c})" for c in chain_ids)
