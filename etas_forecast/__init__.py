"""ETAS Aftershock Forecasting.

## Overview
`etas_forecast` forecasts aftershocks with the Epidemic-Type Aftershock Sequence (ETAS) model. A forecast simulates a large ensemble of synthetic earthquake catalogs, and reports, for each forecast window and magnitude threshold, the expected number of aftershocks and the probability of one or more.

- `etas_forecast.catalog` :: Generation of a single catalog, generation by generation.
- `etas_forecast.ensemble` :: Parallel generation of catalog ensembles, and the initializers that seed each catalog.
- `etas_forecast.accumulators` :: Accumulators that summarise an ensemble while it is generated.
- `etas_forecast.simulator` :: Ranging of the simulation window, followed by the full simulation.
- `etas_forecast.fitting`, `etas_forecast.voxel_fitting` :: Likelihood fitting of a parameter grid to an observed sequence.
- `etas_forecast.voxel_set` :: Selection of simulation seeds from the fitted posterior.

## Using the Forecasts

After installing with `pip install etas_forecast`, forecast from fixed parameters with

```
$ etas-simulate 0.8 1.1 0.01 1.0 1.0 7.0 1.0
```

or fit parameters to an observed sequence and forecast with

```
$ etas-fit-simulate history.csv --output-ffp forecast.csv
```

Default parameters are read from a parameter set (`production` or `development`). Write one out with `etas-simulation-parameters params.json`, edit it, and pass it back with `--config-ffp params.json`.

## The Stages

```mermaid
flowchart LR
    A[Observed Sequence] --> B[Voxel Fitting]
    B --> C[Seed Selection]
    C --> D[Ranging]
    E[Fixed Parameters] --> D
    D --> F[Ensemble Simulation]
    F --> G[Forecast Grid]
```

Times are measured in days, magnitudes are moment magnitudes, and runtime budgets are in seconds.
"""
