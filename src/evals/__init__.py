"""Evaluation pipeline: proposition-based LLM-as-a-judge scoring for persona agents.

Measures how well chat agents stay in character and corrects them before
low-quality messages reach a channel.

Key components:
- propositions / aggregation: weighted, invertible claims and score rollup
- judge: LLM-backed and deterministic (mock) judges
- scorers: adherence, consistency, fluency, convergence, ideas quantity
- gate: pre-delivery quality checks with staged correction
- interventions: nudges for converging or repetitive conversations
- baseline / harness: dynamic and golden baselines, the CI harness
- cost: token and spend accounting over the correction/intervention logs
"""
