"""
Entitlements Module

Stripe subscription mirror, monthly image credit ledger and plan
reconciliation for Enhpix.

Submodules:
- shared: Plan catalog and exceptions
- domain: Subscription status mapping, usage results
- store: ORM models and data access
- external: Stripe client, webhook processing and event handlers
- ledger: Monthly credit ledger
- reconciliation: Drift detection, correction and cancellation
- tasks: Side-effect task queue and identity provisioning
- endpoints: API routes

Usage:
    from enhpix.src.entitlements.container import EntitlementContainer

    container = EntitlementContainer.build(settings)
    result = await container.ledger.try_consume(user_id)
"""
