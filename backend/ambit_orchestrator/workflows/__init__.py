from .create_network import (
    CREATE_NETWORK_MACHINE,
    CreateNetworkContext,
    create_network,
    create_summary,
    ensure_router_acl,
    hydrate_create_network,
)
from .deploy_app import (
    DEPLOY_MACHINE,
    DeployAppContext,
    DeployConfig,
    DeployConfigError,
    deploy_app,
    deploy_summary,
    hydrate_deploy_app,
    resolve_config_mode,
    resolve_image_mode,
)
from .destroy_app import DESTROY_APP_MACHINE, DestroyAppContext, destroy_app, destroy_app_summary, hydrate_destroy_app
from .destroy_network import (
    DESTROY_NETWORK_MACHINE,
    DestroyNetworkContext,
    destroy_network,
    destroy_network_summary,
    hydrate_destroy_network,
)
from .share import ShareContext, grant_network_access, parse_members, share_summary

__all__ = [
    "CREATE_NETWORK_MACHINE",
    "CreateNetworkContext",
    "create_network",
    "create_summary",
    "ensure_router_acl",
    "hydrate_create_network",
    "DEPLOY_MACHINE",
    "DeployAppContext",
    "DeployConfig",
    "DeployConfigError",
    "deploy_app",
    "deploy_summary",
    "hydrate_deploy_app",
    "resolve_config_mode",
    "resolve_image_mode",
    "DESTROY_APP_MACHINE",
    "DestroyAppContext",
    "destroy_app",
    "destroy_app_summary",
    "hydrate_destroy_app",
    "DESTROY_NETWORK_MACHINE",
    "DestroyNetworkContext",
    "destroy_network",
    "destroy_network_summary",
    "hydrate_destroy_network",
    "ShareContext",
    "grant_network_access",
    "parse_members",
    "share_summary",
]
