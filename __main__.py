import pulumi
from awsbuilder import AWSResourceBuilder
from config import StackConfig, load_config
from topology import ResourceGraph, build_graph

DEFAULT_CONFIG_FILE = "config.yaml"


def synthesize(config: StackConfig) -> ResourceGraph:
    """Build and validate the resource graph, logging its digest."""
    graph = build_graph(config)
    pulumi.log.info(f"Synthesized '{graph.stack_name}' with digest {graph.digest()}")
    return graph


def write_document(graph: ResourceGraph, output_file: str) -> None:
    with open(output_file, "w") as file:
        file.write(graph.synthesize())
    pulumi.log.info(f"Wrote resource graph document to '{output_file}'")


def main():
    # Load YAML configuration
    config_file = pulumi.Config().get("config_file") or DEFAULT_CONFIG_FILE
    try:
        config = load_config(config_file)
        graph = synthesize(config)
    except ValueError as e:
        pulumi.log.error(f"Invalid stack definition in '{config_file}': {e}")
        raise

    output_file = pulumi.Config().get("synth_output")
    if output_file:
        write_document(graph, output_file)

    builder = AWSResourceBuilder(config, graph)
    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    # Export stack outputs
    pulumi.export("topology_digest", graph.digest())
    for name, value in builder.outputs.items():
        try:
            pulumi.export(name, value)
        except Exception as e:
            pulumi.log.warn(f"Failed to export output '{name}': {e}")


if __name__ == "__main__":
    main()
