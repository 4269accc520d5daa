"""pdbrecon – compiler invocation recovery from Portable PDBs.

Reads a published .NET assembly and its embedded or external Portable PDB and
reconstructs the compiler arguments, metadata references, source files, and
embedded resources that produced it, for supply-chain verification and
archival.
"""

__version__ = "0.1.0"
