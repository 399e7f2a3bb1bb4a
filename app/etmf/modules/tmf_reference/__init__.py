"""
TMF Reference Model classification (Zone -> Section -> Artifact -> SubArtifact).

The hierarchy is fixed-depth; documents point at any subset of the four levels.
"""
