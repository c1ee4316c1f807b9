"""Initialize database with sample data."""
import sys
from sqlalchemy.orm import Session
from flaglab.database import SessionLocal, engine, Base
from flaglab.exceptions import FlagLabError
from flaglab.models import FeatureFlag, FlagValueType, RolloutStrategy
from flaglab.services.evaluation_cache import EvaluationCache
from flaglab.services.experiments import ExperimentManager
from flaglab.services.feature_flags import FeatureFlagService

SAMPLE_TENANT = "demo"


def init_database():
    """Initialize database with a sample flag and experiment for the demo tenant."""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    db: Session = SessionLocal()

    try:
        # Check if the demo tenant already has data
        existing_flag = db.query(FeatureFlag).filter(FeatureFlag.tenant_id == SAMPLE_TENANT).first()
        if existing_flag:
            print("✓ Database already initialized")
            return

        manager = ExperimentManager(db)
        flags = FeatureFlagService(db, EvaluationCache())

        print("\nCreating sample experiment...")
        experiment = manager.create_experiment(
            SAMPLE_TENANT,
            name="Checkout button copy",
            description="Test short vs urgent call to action",
            variants={"control": "Buy", "treatment": "Buy now"},
            traffic_allocation={"control": 50, "treatment": 50},
            auto_stop_on_significance=True,
            auto_apply_winner=True
        )
        manager.start_experiment(SAMPLE_TENANT, experiment.id)
        print(f"✓ Created and started experiment: {experiment.id}")

        print("\nCreating sample flags...")
        dark_mode = flags.create_flag(
            SAMPLE_TENANT,
            key="dark-mode",
            name="Dark mode",
            value_type=FlagValueType.BOOLEAN,
            default_value=False,
            rollout_strategy=RolloutStrategy.PERCENTAGE,
            rollout_config={"percentage": 25},
            variants={"on": True}
        )
        flags.activate_flag(SAMPLE_TENANT, dark_mode.id)
        print(f"✓ Created flag: {dark_mode.key}")

        checkout = flags.create_flag(
            SAMPLE_TENANT,
            key="checkout-copy",
            name="Checkout button copy",
            value_type=FlagValueType.STRING,
            default_value="Buy",
            rollout_strategy=RolloutStrategy.AB_TEST,
            variants={"control": "Buy", "treatment": "Buy now"},
            experiment_id=experiment.id
        )
        flags.activate_flag(SAMPLE_TENANT, checkout.id)
        print(f"✓ Created flag: {checkout.key}")

        print("\n" + "="*50)
        print("✓ Database initialized successfully!")
        print("="*50)
        print(f"\nTenant: {SAMPLE_TENANT}")
        print("Evaluate a flag with curl:")
        print(f'  curl -X POST -H "x-tenant-id: {SAMPLE_TENANT}" -H "content-type: application/json" \\')
        print('    -d \'{"flag_key": "dark-mode", "context_id": "user_123"}\' http://localhost:8000/evaluate')
        print("\n" + "="*50)

    except FlagLabError as e:
        print(f"✗ Error initializing database: {e}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    init_database()
