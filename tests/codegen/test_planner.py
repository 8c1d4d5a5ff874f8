import pytest

from launchpad.codegen import planner
from launchpad.codegen.schemas import Requirements


@pytest.mark.parametrize(
    ("path", "language"),
    [
        ("src/App.jsx", "jsx"),
        ("src/services/api.js", "javascript"),
        ("Dockerfile", "dockerfile"),
        (".env.example", "dotenv"),
        ("styles/Main.SCSS", "scss"),
        ("notes.unknown", "text"),
        ("", "text"),
    ],
)
def test_infer_language(path, language):
    assert planner.infer_language(path) == language


def test_requirements_accept_service_shapes():
    requirements = Requirements.model_validate(
        {
            "appName": "Recipes",
            "framework": None,
            "pages": ["Home", {"path": "src/pages/Detail.jsx"}],
            "features": ["Search", 42],
            "dataModel": {"recipe": ["title"]},
            "colorScheme": "dark",
        }
    )

    assert requirements.app_name == "Recipes"
    assert requirements.framework == "react"
    assert [p.name for p in requirements.pages] == ["Home", "src/pages/Detail.jsx"]
    assert requirements.features == ["Search"]
    assert requirements.has_data_layer
    assert requirements.model_dump(by_alias=True)["colorScheme"] == "dark"


def test_react_file_plan():
    requirements = Requirements(
        pages=["Home", "user profile"],
        components=["Nav Bar", "AuthProvider"],
        features=["User auth"],
        api={"base": "/api"},
    )

    paths = [spec.path for spec in planner.build_file_plan(requirements)]

    assert paths == [
        "src/main.jsx",
        "src/App.jsx",
        "src/index.css",
        "src/pages/Home.jsx",
        "src/pages/Userprofile.jsx",
        "src/components/NavBar.jsx",
        "src/components/AuthProvider.jsx",
        "src/services/api.js",
    ]


def test_non_react_file_plan_only_lists_pages():
    requirements = Requirements(framework="vue", pages=["Home", "About"])

    assert [spec.path for spec in planner.build_file_plan(requirements)] == [
        "src/pages/Home",
        "src/pages/About",
    ]


def test_config_specs_name_env_vars():
    specs = planner.build_config_specs(Requirements(app_name="Todo", env_vars_needed=["API_KEY"]))

    assert [s.path for s in specs] == [".env.example", "README.md"]
    assert "API_KEY" in specs[0].description
    assert "Todo" in specs[1].description


def test_append_env_vars_adds_only_missing():
    content = "# Environment\nAPI_KEY=\n"

    updated = planner.append_env_vars(content, ["API_KEY", "DATABASE_URL", "DATABASE_URL"])

    assert updated.count("API_KEY=") == 1
    assert updated.count("DATABASE_URL=") == 1
    assert "# Added during iteration" in updated
    assert planner.append_env_vars(updated, ["API_KEY", "DATABASE_URL"]) is None


def test_iteration_message_lists_remaining_errors():
    errors = [f"src/File{i}.jsx:1: Unexpected token" for i in range(12)]

    message = planner.iteration_message("Added dark mode", 3, errors)

    assert "Added dark mode" in message
    assert "3 file(s) were modified." in message
    assert "src/File9.jsx" in message
    assert "src/File10.jsx" not in message
    assert "...and 2 more" in message


def test_requirements_summary_and_completion_message():
    requirements = Requirements(app_name="Todo", pages=["Home"], features=["Add todos"])

    summary = planner.requirements_summary(requirements)
    assert "**Todo**" in summary
    assert "- Home" in summary

    completion = planner.completion_message(requirements, 9)
    assert "**Files created:** 9" in completion
    assert "**Pages:** 1" in completion
