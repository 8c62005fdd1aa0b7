"""cfn_deployer — CloudFormation StackSet deployment orchestration.

Provides:
    - Target registry (environment -> accounts/regions/downstream)
    - Leased deployment locks with stale-lock reclamation
    - StackSet fan-out across account/region pairs
    - Phase state machine driving one deployment attempt
    - Promotion of successful builds to the downstream environment
    - Lambda entry points for artifact intake, orchestration, and config
"""

__version__ = "1.0.0"
