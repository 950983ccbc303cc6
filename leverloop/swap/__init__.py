from .jupiter import (
    JupiterSwapClient,
    SwapApiError,
    SwapInstructions,
    SwapQuote,
    decode_instruction,
    decode_instruction_list,
    extract_swap_instructions,
)

__all__ = [
    "JupiterSwapClient",
    "SwapApiError",
    "SwapInstructions",
    "SwapQuote",
    "decode_instruction",
    "decode_instruction_list",
    "extract_swap_instructions",
]
