from pocketledger.providers import validate_database_config
from pocketledger.schemas import DatabaseSetup


def test_sqlite_is_always_valid() -> None:
    result = validate_database_config(DatabaseSetup(provider="sqlite"))
    assert result.isValid is True
    assert result.errors == []


def test_supabase_missing_url_and_key_reports_both() -> None:
    result = validate_database_config(DatabaseSetup(provider="supabase", supabaseUrl="", supabaseAnonKey=""))
    assert result.isValid is False
    assert len(result.errors) == 2
    assert any("URL" in error for error in result.errors)
    assert any("anon key" in error for error in result.errors)


def test_supabase_url_must_be_project_url() -> None:
    result = validate_database_config(
        DatabaseSetup(provider="supabase", supabaseUrl="http://example.com", supabaseAnonKey="anon")
    )
    assert result.isValid is False
    assert result.errors == ["Supabase URL must look like https://<project>.supabase.co"]


def test_supabase_service_key_only_required_for_auto_create() -> None:
    base = {"provider": "supabase", "supabaseUrl": "https://abcd.supabase.co", "supabaseAnonKey": "anon"}
    assert validate_database_config(DatabaseSetup(**base)).isValid is True

    result = validate_database_config(DatabaseSetup(**base, autoCreateTables=True))
    assert result.isValid is False
    assert len(result.errors) == 1
    assert "service role key" in result.errors[0]


def test_postgres_accepts_connection_string() -> None:
    setup = DatabaseSetup(provider="postgresql", connectionString="postgresql://u:p@db.example.com:5432/finance")
    assert validate_database_config(setup).isValid is True


def test_postgres_accepts_host_tuple_and_warns_without_password() -> None:
    setup = DatabaseSetup(provider="postgresql", host="db", port=5432, database="finance", username="app")
    result = validate_database_config(setup)
    assert result.isValid is True
    assert len(result.warnings) == 1


def test_postgres_missing_tuple_fields_accumulates_errors() -> None:
    result = validate_database_config(DatabaseSetup(provider="postgresql", host="db"))
    assert result.isValid is False
    assert len(result.errors) == 3


def test_mysql_rejects_postgres_connection_string() -> None:
    setup = DatabaseSetup(provider="mysql", connectionString="postgresql://u:p@db/finance")
    result = validate_database_config(setup)
    assert result.isValid is False
    assert "mysql://" in result.errors[0]


def test_neon_and_planetscale_require_connection_string() -> None:
    neon = validate_database_config(DatabaseSetup(provider="neon", host="db", port=5432, database="x", username="u"))
    assert neon.isValid is False
    planetscale = validate_database_config(
        DatabaseSetup(provider="planetscale", connectionString="mysql://u:p@aws.connect.psdb.cloud/finance")
    )
    assert planetscale.isValid is True


def test_validation_is_repeatable() -> None:
    setup = DatabaseSetup(provider="supabase", supabaseUrl="", supabaseAnonKey="")
    assert validate_database_config(setup) == validate_database_config(setup)
