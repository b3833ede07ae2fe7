"""Constants for the AWS Auth Operator."""

# API Group
API_GROUP = "aws-auth.cloud37.dev"
API_VERSION = "v1alpha1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

# Resource Kinds
KIND_BINDING = "IAMRoleBinding"
PLURAL_BINDING = "iamrolebindings"

# Finalizers
FINALIZER = f"{API_GROUP}/finalizer"

# Field Manager
FIELD_MANAGER = "aws-auth-operator"
CONTROLLER_NAME = "aws-auth-operator"

# Role tags written on roles created by the operator
TAG_MANAGED_BY = f"{API_GROUP}/managed-by"
TAG_BINDING_UID = f"{API_GROUP}/binding-uid"
TAG_BINDING_REF = f"{API_GROUP}/binding"

# Role tag marking a pre-existing role as adopted by one Binding
TAG_ADOPTED_BY = f"{API_GROUP}/adopted-by"

# Trust policy defaults
POLICY_VERSION = "2012-10-17"
DEFAULT_AUDIENCE = "sts.amazonaws.com"
WEB_IDENTITY_ACTION = "sts:AssumeRoleWithWebIdentity"

# Condition Types
COND_READY = "Ready"
COND_ROLE_READY = "RoleReady"
COND_TRUST_POLICY_SYNCED = "TrustPolicySynced"
COND_POLICIES_SYNCED = "PoliciesSynced"
COND_AUTH_MAPPING_SYNCED = "AuthMappingSynced"

# Condition Reasons
REASON_RECONCILED = "Reconciled"
REASON_INVALID_SPEC = "InvalidSpec"
REASON_CLOUD_ERROR = "CloudError"
REASON_THROTTLED = "Throttled"
REASON_CONFIGURATION_ERROR = "ConfigurationError"
REASON_STORE_ERROR = "StoreError"
REASON_CLEANUP_FAILED = "CleanupFailed"
REASON_DISABLED = "Disabled"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_VALIDATE_FAILED = "ValidateFailed"
EVENT_REASON_ROLE_CREATED = "RoleCreated"
EVENT_REASON_ROLE_DELETED = "RoleDeleted"
EVENT_REASON_TRUST_POLICY_UPDATED = "TrustPolicyUpdated"
EVENT_REASON_POLICY_ATTACHED = "PolicyAttached"
EVENT_REASON_POLICY_DETACHED = "PolicyDetached"
EVENT_REASON_AUTH_MAPPING_UPDATED = "AuthMappingUpdated"
EVENT_REASON_CLEANUP_SUCCEEDED = "CleanupSucceeded"
EVENT_REASON_CLEANUP_FAILED = "CleanupFailed"
