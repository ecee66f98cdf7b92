from dependency_injector import containers, providers

from marksapi.config import Settings
from marksapi.providers.identity.world_id import WorldIdVerifier
from marksapi.providers.settlement.treasury import TreasuryGateway
from marksapi.services.award_service import AwardService
from marksapi.services.marks_service import MarksService
from marksapi.services.withdrawal_service import WithdrawalService
from marksapi.utils.conversion import MarksPolicy


class ConfigModule(containers.DeclarativeContainer):
    """Application configuration."""

    config = providers.Singleton(Settings)
    policy = providers.Singleton(MarksPolicy.from_settings, config)


class ProviderModule(containers.DeclarativeContainer):
    """External service adapters (프로세스당 하나, HTTP 커넥션 재사용)."""

    config = providers.DependenciesContainer()

    treasury_gateway = providers.Singleton(
        TreasuryGateway,
        base_url=config.config.provided.TREASURY_API_BASE_URL,
        api_key=config.config.provided.TREASURY_API_KEY,
        timeout=config.config.provided.TREASURY_TIMEOUT_SECONDS,
    )
    identity_verifier = providers.Singleton(
        WorldIdVerifier,
        app_id=config.config.provided.WORLD_ID_APP_ID,
        verify_url=config.config.provided.WORLD_ID_VERIFY_URL,
        timeout=config.config.provided.WORLD_ID_TIMEOUT_SECONDS,
    )


class ServiceModule(containers.DeclarativeContainer):
    """
    Service layer dependencies.

    DB 세션은 요청마다 라우터가 get_db 로 받아 팩토리에 넘깁니다 (db=...).
    """

    config = providers.DependenciesContainer()
    adapters = providers.DependenciesContainer()

    marks_service = providers.Factory(MarksService, policy=config.policy)
    award_service = providers.Factory(
        AwardService,
        identity_verifier=adapters.identity_verifier,
        policy=config.policy,
    )
    withdrawal_service = providers.Factory(
        WithdrawalService,
        gateway=adapters.treasury_gateway,
        policy=config.policy,
    )


class Container(containers.DeclarativeContainer):
    """Application container."""

    wiring_config = containers.WiringConfiguration(
        modules=[
            "marksapi.routers.marks_router",
            "marksapi.routers.admin_router",
        ],
    )

    config = providers.Container(ConfigModule)
    adapters = providers.Container(ProviderModule, config=config)
    services = providers.Container(
        ServiceModule, config=config, adapters=adapters
    )
