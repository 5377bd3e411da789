from .caravan import CaravanSignatureExtractor, SignatureInterchangeRecord  # noqa: F401
from .config import (  # noqa: F401
    ExtendedKeyRecord,
    MultisigWalletConfig,
    NodeConfig,
    QuorumConfig,
    load_wallet_catalog,
    load_wallet_config,
)
from .coordinator import PSBTCoordinator, SigningState  # noqa: F401
from .descriptor import DescriptorBuilder, OutputDescriptor  # noqa: F401
from .detector import WalletOwnershipDetector  # noqa: F401
from .errors import (  # noqa: F401
    BroadcastRejected,
    ConfigInvalid,
    DescriptorMismatch,
    ImportFailed,
    IncompletePSBT,
    InsufficientFunds,
    QuorumError,
    ReplacementRaceLost,
    RPCConnectionError,
    RPCError,
    SigningFailure,
)
from .replacement import ReplacementEngine, ReplacementResult  # noqa: F401
from .rpc import BitcoinRPC, FinalizationResult  # noqa: F401
from .signing import KeySigner, SigningReport, WalletSigner  # noqa: F401
from .wallet import WatchWalletManager  # noqa: F401
