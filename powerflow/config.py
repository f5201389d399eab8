from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "POWERFLOW_", "case_sensitive": False}

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Solver defaults
    accuracy: float = 1e-6
    iterations_count: int = 100
    voltage_ratio: float = 0.5
    voltage_convergence: float = 1e-6
    acceleration_rate: float = 0.95
    use_voltage_constraint: bool = False
    voltage_constraint_percentage: float = 10.0
    use_breaker_impedance: bool = True
    solver_internal_logging: bool = True
    linear_solver: str = "dense"

    # Batch
    max_workers: int | None = None


settings = Settings()
