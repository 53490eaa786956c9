"""Contracts package.

This package defines the wire contracts this client shares with the outside
world: finalization record schemas and their strict v1 validation, and the
byte layouts of transactions, position accounts and view return data.
Other packages may only share wire types via `veilperp.core` and
`veilperp.contracts`.
"""
