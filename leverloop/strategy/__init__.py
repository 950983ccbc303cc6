from .addresses import (
    AddressBook,
    AddressBookError,
    FarmAddresses,
    PoolAddresses,
    ProgramIds,
    associated_token_address,
    derive_farm_addresses,
)
from .instructions import InstructionBuilder, anchor_discriminator, encode_u64
from .orchestrator import LeverageLoopStrategy, StrategyConfig, StrategyError, StrategyResult

__all__ = [
    "AddressBook",
    "AddressBookError",
    "FarmAddresses",
    "InstructionBuilder",
    "LeverageLoopStrategy",
    "PoolAddresses",
    "ProgramIds",
    "StrategyConfig",
    "StrategyError",
    "StrategyResult",
    "anchor_discriminator",
    "associated_token_address",
    "derive_farm_addresses",
    "encode_u64",
]
