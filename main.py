import logging
import sys
from pathlib import Path
from typing import Callable, Optional

from langgraph.graph import StateGraph, START, END

from config import AppConfig
from deal_storage import Storage
from nodes.contract_extractor import ContractExtractor, ContractExtractorConfig
from nodes.document_text import TextExtractionResult, extract_document_text
from nodes.contract_pipeline import (
    make_contract_extraction_node,
    make_document_text_node,
    make_persist_no_text_node,
    make_persist_node,
    route_after_text,
)
from state import ContractExtractionState


def build_contract_graph(
    storage: Storage,
    extractor: ContractExtractor,
    text_extractor: Optional[Callable[[bytes, str], TextExtractionResult]] = None,
):
    """
    Constructs the contract extraction state machine.

    document_text -> contract_extraction -> persist
                  -> persist_no_text        (scanned / image-only PDF)
                  -> END                    (unreadable file, nothing written)
    """
    builder = StateGraph(ContractExtractionState)

    # 1. Add Nodes
    builder.add_node("document_text", make_document_text_node(text_extractor or extract_document_text))
    builder.add_node("contract_extraction", make_contract_extraction_node(extractor))
    builder.add_node("persist", make_persist_node(storage))
    builder.add_node("persist_no_text", make_persist_no_text_node(storage))

    # 2. Add Edges
    builder.add_edge(START, "document_text")
    builder.add_conditional_edges(
        "document_text",
        route_after_text,
        {
            "contract_extraction": "contract_extraction",
            "persist_no_text": "persist_no_text",
            "end": END,
        },
    )
    builder.add_edge("contract_extraction", "persist")
    builder.add_edge("persist", END)
    builder.add_edge("persist_no_text", END)

    # 3. Compile
    return builder.compile()


if __name__ == "__main__":
    # Extract one local PDF into a scratch contract record
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) != 2:
        print("usage: python main.py <contract.pdf>")
        sys.exit(1)

    pdf_path = Path(sys.argv[1])
    storage = Storage(AppConfig.from_env().storage_dir)
    extractor = ContractExtractor.from_config(ContractExtractorConfig.from_env())
    graph = build_contract_graph(storage, extractor)

    contract = storage.contracts.insert({
        "file_url": pdf_path.name,
        "file_name": pdf_path.name,
        "extraction_status": "none",
        "reviewed": False,
    })
    final_state = graph.invoke({
        "contract_id": contract["id"],
        "file_name": pdf_path.name,
        "file_bytes": pdf_path.read_bytes(),
    })
    print(f"Text status: {final_state.get('text_status')}")
    print(f"Confidence: {final_state.get('confidence')}")
    print(final_state.get("message") or final_state.get("extracted_data"))
