"""
Shared module to hold constant values for the operator
"""

## Managed resource types ######################################################

APPS_GROUP = "apps.3scale.net"
APPS_VERSION = "v1alpha1"
APPS_API_VERSION = f"{APPS_GROUP}/{APPS_VERSION}"

APIMANAGER_KIND = "APIManager"
APIMANAGER_BACKUP_KIND = "APIManagerBackup"
APIMANAGER_RESTORE_KIND = "APIManagerRestore"

## Annotations #################################################################

# Version markers compared on every reconcile to trigger the upgrade phase
OPERATOR_VERSION_ANNOTATION = "apps.3scale.net/threescale-operator-version"
RELEASE_VERSION_ANNOTATION = "apps.3scale.net/apimanager-threescale-version"

# Tags on desired objects that request deletion instead of apply
DELETE_TAG_ANNOTATION = "apps.3scale.net/delete"
DELETE_PROPAGATION_POLICY_ANNOTATION = "apps.3scale.net/delete-propagation-policy"

# Backend async processing switch read by the HPA warning
DISABLE_ASYNC_ANNOTATION = "apps.3scale.net/disable-async"

# Per-instance log config annotations
LOG_DEFAULT_LEVEL_NAME = "apps.3scale.net/log-default-level"
LOG_FILTERS_NAME = "apps.3scale.net/log-filters"
LOG_THREAD_ID_NAME = "apps.3scale.net/log-thread-id"
LOG_JSON_NAME = "apps.3scale.net/log-json"

## Status fields ###############################################################

STATUS_CONDITIONS = "conditions"
STATUS_DEPLOYMENTS = "deployments"
STATUS_CONFIRMED_REQUIREMENTS = "confirmedRequirementsVersion"

## Requirements snapshot #######################################################

REQUIREMENTS_CONFIGMAP_NAME = "3scale-api-management-operator-requirements"
RHT_THREESCALE_VERSION = "rht_threescale_version_requirements"
RHT_MYSQL_REQUIREMENTS = "rht_mysql_requirements"
RHT_POSTGRES_REQUIREMENTS = "rht_postgres_requirements"
RHT_SYSTEM_REDIS_REQUIREMENTS = "rht_system_redis_requirements"
RHT_BACKEND_REDIS_REQUIREMENTS = "rht_backend_redis_requirements"

# Requirement keys carried as CSV annotations
REQUIREMENT_ANNOTATION_KEYS = [
    RHT_MYSQL_REQUIREMENTS,
    RHT_POSTGRES_REQUIREMENTS,
    RHT_SYSTEM_REDIS_REQUIREMENTS,
    RHT_BACKEND_REDIS_REQUIREMENTS,
]

# Label on the CSV deployment template holding the incoming release
COMPONENT_VERSION_LABEL = "rht.comp_ver"

## Operator lifecycle manager ##################################################

OLM_GROUP = "operators.coreos.com"
SUBSCRIPTION_KIND = "Subscription"
SUBSCRIPTION_API_VERSION = f"{OLM_GROUP}/v1alpha1"
INSTALL_PLAN_KIND = "InstallPlan"
INSTALL_PLAN_API_VERSION = f"{OLM_GROUP}/v1alpha1"
CSV_KIND = "ClusterServiceVersion"
CSV_API_VERSION = f"{OLM_GROUP}/v1alpha1"
OPERATOR_CONDITION_KIND = "OperatorCondition"
OPERATOR_CONDITION_API_VERSION = f"{OLM_GROUP}/v2"
UPGRADEABLE_CONDITION = "Upgradeable"

## General #####################################################################

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# Timestamp format used for condition transitions and step markers
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
