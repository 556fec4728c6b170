# ABI mínima del contrato DocumentRegistry (solo lo que usa el gateway)
DOCUMENT_REGISTRY_ABI = [
    {
        "type": "function",
        "name": "registerDocument",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "documentHash", "type": "bytes32"},
            {"name": "ipfsHash", "type": "string"},
            {"name": "owner", "type": "address"},
            {"name": "metadata", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getDocument",
        "stateMutability": "view",
        "inputs": [{"name": "documentHash", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "documentHash", "type": "bytes32"},
                    {"name": "ipfsHash", "type": "string"},
                    {"name": "issuer", "type": "address"},
                    {"name": "owner", "type": "address"},
                    {"name": "timestamp", "type": "uint256"},
                    {"name": "isActive", "type": "bool"},
                    {"name": "metadata", "type": "string"},
                ],
            }
        ],
    },
    {
        "type": "event",
        "name": "DocumentRegistered",
        "anonymous": False,
        "inputs": [
            {"name": "documentHash", "type": "bytes32", "indexed": True},
            {"name": "issuer", "type": "address", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "ipfsHash", "type": "string", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
]
