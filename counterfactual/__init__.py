"""
Counterfactual giving impact: survey-to-ledger matching, counterfactual
weighting and MrP-style poststratification of donation volume.
"""

__version__ = "0.1.0"
