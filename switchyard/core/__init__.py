"""Core types: errors, collaborator protocols, clock and wiring."""
