"""Contract ABIs for the intent factory, payment intents and ERC-20 tokens."""

from __future__ import annotations


def _param(name: str, type_: str, indexed: bool | None = None, components=None) -> dict:
    entry: dict = {"name": name, "type": type_}
    if indexed is not None:
        entry["indexed"] = indexed
    if components is not None:
        entry["components"] = components
    return entry


def _fn(name: str, inputs=(), outputs=(), mutability: str = "view") -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": list(outputs),
        "stateMutability": mutability,
    }


def _event(name: str, inputs) -> dict:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


INTENT_PARAMS_COMPONENTS = [
    _param("token", "address"),
    _param("agent", "address"),
    _param("totalCap", "uint256"),
    _param("perTxCap", "uint256"),
    _param("start", "uint64"),
    _param("end", "uint64"),
    _param("merchants", "address[]"),
    _param("metadataURI", "string"),
    _param("salt", "bytes32"),
]

FACTORY_ABI = [
    _fn(
        "createIntent",
        [_param("params", "tuple", components=INTENT_PARAMS_COMPONENTS)],
        [_param("intent", "address")],
        "nonpayable",
    ),
    _fn(
        "predictIntent",
        [_param("payer", "address"), _param("salt", "bytes32")],
        [_param("", "address")],
    ),
    _fn("getPayerIntents", [_param("payer", "address")], [_param("", "address[]")]),
    _fn("getAgentIntents", [_param("agent", "address")], [_param("", "address[]")]),
    _fn("totalIntents", [], [_param("", "uint256")]),
    _event(
        "IntentCreated",
        [
            _param("payer", "address", True),
            _param("intent", "address", True),
            _param("agent", "address", True),
            _param("salt", "bytes32", False),
        ],
    ),
]

INTENT_ABI = [
    _fn(
        "execute",
        [
            _param("merchant", "address"),
            _param("amount", "uint256"),
            _param("receiptHash", "bytes32"),
            _param("receiptURI", "string"),
        ],
        [],
        "nonpayable",
    ),
    _fn("revoke", [_param("reason", "string")], [], "nonpayable"),
    _fn("topUp", [_param("amount", "uint256")], [], "nonpayable"),
    _fn("withdrawRemainder", [_param("to", "address")], [], "nonpayable"),
    _fn(
        "updateMerchant",
        [_param("merchant", "address"), _param("allowed", "bool")],
        [],
        "nonpayable",
    ),
    _fn("state", [], [_param("", "uint8")]),
    _fn("payer", [], [_param("", "address")]),
    _fn("agent", [], [_param("", "address")]),
    _fn("token", [], [_param("", "address")]),
    _fn("metadataURI", [], [_param("", "string")]),
    _fn(
        "limits",
        [],
        [
            _param("totalCap", "uint256"),
            _param("perTxCap", "uint256"),
            _param("spent", "uint256"),
            _param("start", "uint64"),
            _param("end", "uint64"),
        ],
    ),
    _fn("isMerchantAllowed", [_param("merchant", "address")], [_param("", "bool")]),
    _fn("getBalance", [], [_param("", "uint256")]),
    _fn("getRemainingCap", [], [_param("", "uint256")]),
    _fn("getTimeRemaining", [], [_param("", "uint256")]),
    _event(
        "Executed",
        [
            _param("agent", "address", True),
            _param("merchant", "address", True),
            _param("token", "address", True),
            _param("amount", "uint256", False),
            _param("receiptHash", "bytes32", False),
            _param("receiptURI", "string", False),
        ],
    ),
    _event("Revoked", [_param("by", "address", True), _param("reason", "string", False)]),
    _event("ToppedUp", [_param("amount", "uint256", False)]),
    _event("Withdrawn", [_param("to", "address", True), _param("amount", "uint256", False)]),
    _event(
        "MerchantUpdated",
        [_param("merchant", "address", True), _param("allowed", "bool", False)],
    ),
]

ERC20_ABI = [
    _fn(
        "transfer",
        [_param("to", "address"), _param("amount", "uint256")],
        [_param("", "bool")],
        "nonpayable",
    ),
    _fn(
        "approve",
        [_param("spender", "address"), _param("amount", "uint256")],
        [_param("", "bool")],
        "nonpayable",
    ),
    _fn("balanceOf", [_param("owner", "address")], [_param("", "uint256")]),
    _fn(
        "allowance",
        [_param("owner", "address"), _param("spender", "address")],
        [_param("", "uint256")],
    ),
    _fn("decimals", [], [_param("", "uint8")]),
    _fn("symbol", [], [_param("", "string")]),
]

FACTORY_EVENTS = ("IntentCreated",)
INTENT_EVENTS = ("Executed", "Revoked", "ToppedUp", "Withdrawn", "MerchantUpdated")

# Numeric values returned by intent.state()
CONTRACT_STATE_ACTIVE = 0
CONTRACT_STATE_REVOKED = 1
CONTRACT_STATE_EXPIRED = 2


def event_abi(name: str) -> dict:
    for abi in (FACTORY_ABI, INTENT_ABI):
        for entry in abi:
            if entry["type"] == "event" and entry["name"] == name:
                return entry
    raise KeyError(f"Unknown event: {name}")


def event_signature(name: str) -> str:
    """Canonical signature used for the topic hash, e.g. ``ToppedUp(uint256)``."""
    entry = event_abi(name)
    types = ",".join(i["type"] for i in entry["inputs"])
    return f"{name}({types})"
