from dependency_injector import containers, providers

from pointledger.config import Settings
from pointledger.database.session import get_db
from pointledger.services.expiration_service import ExpirationService
from pointledger.services.point_service import PointService


class ConfigModule(containers.DeclarativeContainer):
    """Application configuration."""

    config = providers.Singleton(Settings)


class RepositoryModule(containers.DeclarativeContainer):
    """Database session."""

    get_db = providers.Resource(get_db)


class ServiceModule(containers.DeclarativeContainer):
    """Service layer dependencies."""

    config = providers.DependenciesContainer()
    repositories = providers.DependenciesContainer()

    point_service = providers.Factory(
        PointService, db=repositories.get_db, settings=config.config
    )
    expiration_service = providers.Factory(
        ExpirationService, db=repositories.get_db, settings=config.config
    )


class Container(containers.DeclarativeContainer):
    """Application container."""

    wiring_config = containers.WiringConfiguration(
        modules=[
            "pointledger.routers.point_router",
        ],
    )

    config = providers.Container(ConfigModule)
    repositories = providers.Container(RepositoryModule)
    services = providers.Container(
        ServiceModule, config=config, repositories=repositories
    )
