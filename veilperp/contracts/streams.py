from __future__ import annotations

# v1 finalization record schemas (frozen semantics for v1).
# Every record is published to FINALIZATION_STREAM_V1; the schema tells the
# tracker which result type to decode.

FINALIZATION_STREAM_V1 = "mpc.computation.finalized.v1"

MPC_POSITION_OPENED_V1 = "mpc.position_opened.v1"
MPC_POSITION_CLOSED_V1 = "mpc.position_closed.v1"
MPC_COLLATERAL_ADDED_V1 = "mpc.collateral_added.v1"
MPC_COLLATERAL_REMOVED_V1 = "mpc.collateral_removed.v1"
MPC_POSITION_LIQUIDATED_V1 = "mpc.position_liquidated.v1"
MPC_POSITION_VALUE_CALCULATED_V1 = "mpc.position_value_calculated.v1"

MPC_COMPUTATION_FAILED_V1 = "mpc.computation_failed.v1"

# circuit name -> success schema
SCHEMA_BY_CIRCUIT = {
    "open_position": MPC_POSITION_OPENED_V1,
    "close_position": MPC_POSITION_CLOSED_V1,
    "add_collateral": MPC_COLLATERAL_ADDED_V1,
    "remove_collateral": MPC_COLLATERAL_REMOVED_V1,
    "liquidate": MPC_POSITION_LIQUIDATED_V1,
    "calculate_position_value": MPC_POSITION_VALUE_CALCULATED_V1,
}

# Ciphertext fields per schema, in the order the circuit encrypts them
# (which is also the per-field nonce counter order).
ENCRYPTED_FIELDS = {
    MPC_POSITION_CLOSED_V1: ("realized_pnl_encrypted", "final_balance_encrypted", "can_close_encrypted"),
    MPC_COLLATERAL_ADDED_V1: ("new_collateral_encrypted", "new_leverage_encrypted"),
    MPC_COLLATERAL_REMOVED_V1: (
        "new_collateral_encrypted",
        "removed_amount_encrypted",
        "can_remove_encrypted",
        "new_leverage_encrypted",
    ),
    MPC_POSITION_LIQUIDATED_V1: (
        "is_liquidatable_encrypted",
        "remaining_collateral_encrypted",
        "penalty_encrypted",
    ),
    MPC_POSITION_VALUE_CALCULATED_V1: ("current_value_encrypted", "pnl_encrypted"),
}


def dlq_stream(base_stream: str) -> str:
    return f"dlq.{base_stream}.v1"
