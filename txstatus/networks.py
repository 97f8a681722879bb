from typing import Dict, List

NETWORKS: Dict[int, str] = {
    1: "ethereum",
    11155111: "sepolia",
    56: "bsc",
}


class UnsupportedNetwork(ValueError):
    """Raised when a chain id has no entry in the registry."""

    def __init__(self, network_id):
        self.network_id = network_id
        supported = ", ".join(str(n) for n in NETWORKS)
        super().__init__(
            f"Unsupported network ID: {network_id}. Supported networks: {supported}"
        )


def is_supported(network_id) -> bool:
    return network_id in NETWORKS


def resolve(network_id) -> str:
    """Map a numeric chain id to its canonical network name."""
    try:
        return NETWORKS[network_id]
    except (KeyError, TypeError):
        raise UnsupportedNetwork(network_id) from None


def supported_ids() -> List[int]:
    return list(NETWORKS)
