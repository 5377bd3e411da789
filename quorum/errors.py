class QuorumError(Exception):
    pass


class ConfigInvalid(QuorumError, ValueError):
    """
    Malformed quorum, key set or wallet config.

    Always raised before anything is sent to the node.
    """

    pass


class InsufficientFunds(QuorumError):
    pass


class DescriptorMismatch(QuorumError):
    """
    Descriptors or scripts did not match what a wallet config derives.
    """

    pass


class SigningFailure(QuorumError):
    """
    One input could not be signed.

    Collected on the signing report, never raised by a signing round.
    """

    def __init__(self, index, reason):
        super().__init__(f"input {index}: {reason}")
        self.index = index
        self.reason = reason


class IncompletePSBT(QuorumError):
    def __init__(self, message, psbt=None):
        super().__init__(message)
        self.psbt = psbt


class BroadcastRejected(QuorumError):
    def __init__(self, reason, code=None):
        super().__init__(reason)
        self.reason = reason
        self.code = code


class ReplacementRaceLost(QuorumError):
    def __init__(self, txid, message=None):
        super().__init__(
            message or f"{txid} confirmed before its replacement was broadcast"
        )
        self.txid = txid


class ImportFailed(QuorumError):
    def __init__(self, descriptor, reason):
        super().__init__(f"import of {descriptor} failed: {reason}")
        self.descriptor = descriptor
        self.reason = reason


class RPCError(QuorumError):
    def __init__(self, code, message, method=None):
        super().__init__(f"{method}: {message} (code {code})")
        self.code = code
        self.message = message
        self.method = method


class RPCConnectionError(QuorumError):
    pass
