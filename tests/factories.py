ISSUER = "0x" + "a" * 40
OWNER = "0x" + "b" * 40
VIEWER = "0x" + "c" * 40
NEW_OWNER = "0x" + "d" * 40
OTHER = "0x" + "e" * 40
ADMIN = "0x" + "9" * 40

# Vector de referencia SHA-256 de b"hello\n"
HELLO = b"hello\n"
HELLO_FP = "0x5891b5b522d5df086d0ff0b110fbd9d21bb4fc7163af34d08286a2e846f6be03"

METADATA = {
    "recipientName": "Jane",
    "recipientId": "STU001",
    "issuingAuthority": "Acme U",
    "credentialKind": "degree",
    "issueDate": "2024-01-15",
}
