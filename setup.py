from setuptools import find_namespace_packages, setup

setup(
    name="etas_forecast",
    version="0.1.0",
    packages=find_namespace_packages(include=["etas_forecast*"]),
    package_data={"etas_forecast.default_parameters": ["*/defaults.yaml"]},
    python_requires=">=3.11",
    install_requires=[
        "click",
        "numpy",
        "pandas",
        "PyYAML",
        "schema",
        "scipy",
        "typer<0.26",
    ],
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": [
            "etas-simulate=etas_forecast.scripts.simulate:main",
            "etas-fit-simulate=etas_forecast.scripts.fit_simulate:main",
            "etas-simulation-parameters=etas_forecast.scripts.simulation_parameters:main",
        ]
    },
)
