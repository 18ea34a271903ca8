# ==== SERVICES PACKAGE ==== #

"""
Services package for the escalation engine.

Contains the business clock, timeline ledger, rule catalog, evaluator,
action executor and the notification collaborator.
"""
