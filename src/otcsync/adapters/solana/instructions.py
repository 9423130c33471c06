from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from borsh_construct import U64, U128, CStruct
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

POOL_ACCOUNT = Pubkey.from_string("BSC6rWJ9ucqZ6rcM3knfpgdRwCyJ7Q9KsddjeSL4EdHq")
CLOCK_ACCOUNT = Pubkey.from_string("EQr6UCd7eyRjpuRsNK6a8WxkgrpSGctKMFuz92FRRh63")
SYSTEM_PROGRAM = Pubkey.from_string("11111111111111111111111111111111")

BALANCE_SEED = b"balance"
SIGN_PDA_SEED = b"SignerAccount"
MXE_SEED = b"MXEAccount"
MEMPOOL_SEED = b"Mempool"
EXECPOOL_SEED = b"Execpool"
COMPUTATION_SEED = b"ComputationAccount"
CLUSTER_SEED = b"Cluster"
COMP_DEF_SEED = b"ComputationDefinitionAccount"

CRANK_ARGS_LAYOUT = CStruct(
    "computation_offset" / U64,
    "blob_nonce" / U128,
    "balance_blob_nonce" / U128,
)


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def comp_def_offset(circuit_name: str) -> int:
    return int.from_bytes(hashlib.sha256(circuit_name.encode()).digest()[:4], "little")


def generate_computation_offset() -> int:
    return secrets.randbits(64)


def generate_nonce() -> int:
    return secrets.randbits(128)


def _pda(seeds: list[bytes], program_id: Pubkey) -> Pubkey:
    address, _ = Pubkey.find_program_address(seeds, program_id)
    return address


def balance_address(controller: Pubkey, mint: Pubkey, program_id: Pubkey) -> Pubkey:
    return _pda([BALANCE_SEED, bytes(controller), bytes(mint)], program_id)


def sign_pda_address(program_id: Pubkey) -> Pubkey:
    return _pda([SIGN_PDA_SEED], program_id)


@dataclass(frozen=True)
class ComputationAccounts:
    """Accounts the confidential-computation program needs to queue one computation."""

    sign_pda: Pubkey
    mxe: Pubkey
    mempool: Pubkey
    executing_pool: Pubkey
    computation: Pubkey
    comp_def: Pubkey
    cluster: Pubkey

    @classmethod
    def derive(
        cls,
        *,
        program_id: Pubkey,
        arcium_program_id: Pubkey,
        cluster_offset: int,
        computation_offset: int,
        circuit_name: str,
    ) -> ComputationAccounts:
        cluster_le = cluster_offset.to_bytes(4, "little")
        return cls(
            sign_pda=sign_pda_address(program_id),
            mxe=_pda([MXE_SEED, bytes(program_id)], arcium_program_id),
            mempool=_pda([MEMPOOL_SEED, cluster_le], arcium_program_id),
            executing_pool=_pda([EXECPOOL_SEED, cluster_le], arcium_program_id),
            computation=_pda(
                [COMPUTATION_SEED, cluster_le, computation_offset.to_bytes(8, "little")],
                arcium_program_id,
            ),
            comp_def=_pda(
                [
                    COMP_DEF_SEED,
                    bytes(program_id),
                    comp_def_offset(circuit_name).to_bytes(4, "little"),
                ],
                arcium_program_id,
            ),
            cluster=_pda([CLUSTER_SEED, cluster_le], arcium_program_id),
        )

    def metas(self, arcium_program_id: Pubkey) -> list[AccountMeta]:
        return [
            AccountMeta(self.sign_pda, is_signer=False, is_writable=True),
            AccountMeta(self.mxe, is_signer=False, is_writable=False),
            AccountMeta(self.mempool, is_signer=False, is_writable=True),
            AccountMeta(self.executing_pool, is_signer=False, is_writable=True),
            AccountMeta(self.computation, is_signer=False, is_writable=True),
            AccountMeta(self.comp_def, is_signer=False, is_writable=False),
            AccountMeta(self.cluster, is_signer=False, is_writable=True),
            AccountMeta(POOL_ACCOUNT, is_signer=False, is_writable=True),
            AccountMeta(CLOCK_ACCOUNT, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
            AccountMeta(arcium_program_id, is_signer=False, is_writable=False),
        ]


@dataclass(frozen=True)
class CrankArgs:
    computation_offset: int
    blob_nonce: int
    balance_blob_nonce: int

    @classmethod
    def generate(cls) -> CrankArgs:
        return cls(
            computation_offset=generate_computation_offset(),
            blob_nonce=generate_nonce(),
            balance_blob_nonce=generate_nonce(),
        )

    def encode(self, instruction_name: str) -> bytes:
        return instruction_discriminator(instruction_name) + CRANK_ARGS_LAYOUT.build(
            {
                "computation_offset": self.computation_offset,
                "blob_nonce": self.blob_nonce,
                "balance_blob_nonce": self.balance_blob_nonce,
            }
        )


def build_crank_deal_instruction(
    *,
    program_id: Pubkey,
    arcium_program_id: Pubkey,
    payer: Pubkey,
    deal: Pubkey,
    deal_controller: Pubkey,
    base_mint: Pubkey,
    cluster_offset: int,
    args: CrankArgs,
) -> Instruction:
    computation = ComputationAccounts.derive(
        program_id=program_id,
        arcium_program_id=arcium_program_id,
        cluster_offset=cluster_offset,
        computation_offset=args.computation_offset,
        circuit_name="crank_deal",
    )
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(deal, is_signer=False, is_writable=True),
        AccountMeta(
            balance_address(deal_controller, base_mint, program_id),
            is_signer=False,
            is_writable=True,
        ),
        *computation.metas(arcium_program_id),
    ]
    return Instruction(program_id, args.encode("crank_deal"), accounts)


def build_crank_offer_instruction(
    *,
    program_id: Pubkey,
    arcium_program_id: Pubkey,
    payer: Pubkey,
    deal: Pubkey,
    offer: Pubkey,
    offer_controller: Pubkey,
    quote_mint: Pubkey,
    cluster_offset: int,
    args: CrankArgs,
) -> Instruction:
    computation = ComputationAccounts.derive(
        program_id=program_id,
        arcium_program_id=arcium_program_id,
        cluster_offset=cluster_offset,
        computation_offset=args.computation_offset,
        circuit_name="crank_offer",
    )
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(deal, is_signer=False, is_writable=False),
        AccountMeta(offer, is_signer=False, is_writable=True),
        AccountMeta(
            balance_address(offer_controller, quote_mint, program_id),
            is_signer=False,
            is_writable=True,
        ),
        *computation.metas(arcium_program_id),
    ]
    return Instruction(program_id, args.encode("crank_offer"), accounts)
