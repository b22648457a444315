"""Escrow engine: lifecycle manager, condition/approval engines, release math and templates."""
