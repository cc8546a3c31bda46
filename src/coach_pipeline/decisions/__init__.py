"""AI-gated decisions: execution, confidence policy, audit log and cost ledger."""
