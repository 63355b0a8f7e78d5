#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import unquote

COLLECTIONS: list[dict[str, object]] = [
    {"nombre": "Incendios", "descripcion": "Incendios forestales reportados"},
    {"nombre": "Inundaciones", "descripcion": "Anegamientos y crecidas"},
]

FACTS_BY_COLLECTION: dict[str, list[dict[str, object]]] = {
    "Incendios": [
        {
            "id": "h-100",
            "nombreColeccion": "Incendios",
            "origen": "dataset",
            "titulo": "Incendio en Bosque Norte",
            "descripcion": "Columna de humo visible desde la ruta 40",
            "ubicacion": "Bariloche",
            "categoria": "medio ambiente",
            "fecha": "2025-01-12T14:30:00Z",
            "etiquetas": ["incendio", "bosque"],
        },
        {
            "id": "h-101",
            "nombreColeccion": "Incendios",
            "origen": "contribuyente",
            "titulo": "Quema de pastizales",
            "descripcion": "Quema no autorizada cerca del arroyo",
            "ubicacion": "Rosario",
            "categoria": "seguridad",
            "fecha": "2025-02-03T09:00:00Z",
            "etiquetas": ["incendio", "pastizal"],
        },
    ],
    "Inundaciones": [
        {
            "id": "h-200",
            "nombreColeccion": "Inundaciones",
            "origen": "dataset",
            "titulo": "Calle anegada en el centro",
            "descripcion": "Autos varados tras la tormenta",
            "ubicacion": "La Plata",
            "categoria": "infraestructura",
            "fecha": "2025-03-20T21:15:00Z",
            "etiquetas": ["inundacion", "tormenta"],
        },
    ],
}

POIS: list[dict[str, object]] = [
    {
        "id": "p-1",
        "hechoId": "h-100",
        "descripcion": "Foto del frente de fuego",
        "lugar": "Ruta 40 km 2010",
        "contenido": "Imagen tomada por un vecino",
        "momento": "2025-01-12T15:00:00Z",
        "imagenUrl": "https://images.example.org/p-1.jpg",
        "ocrText": "PELIGRO INCENDIO",
        "etiquetasIA": ["humo", "fuego"],
        "estadoProcesamiento": "PROCESADO",
        "fechaProcesamiento": "2025-01-12T15:05:00Z",
    },
    {
        "id": "p-2",
        "hechoId": "h-999",
        "descripcion": "Punto sin hecho indexado",
        "lugar": "Desconocido",
    },
]


class MockUpstreamHandler(BaseHTTPRequestHandler):
    server_version = "MockUpstream/1.0"

    def do_GET(self) -> None:  # noqa: N802 - stdlib handler signature
        path = self.path.split("?", maxsplit=1)[0].rstrip("/")
        if path == "/healthz":
            self._write_json(HTTPStatus.OK, {"status": "ok"})
            return

        if path == "/api/colecciones":
            self._write_json(HTTPStatus.OK, COLLECTIONS)
            return

        if path == "/api/PdIs":
            self._write_json(HTTPStatus.OK, POIS)
            return

        prefix, suffix = "/api/colecciones/", "/hechos"
        if path.startswith(prefix) and path.endswith(suffix):
            name = unquote(path[len(prefix) : -len(suffix)])
            facts = FACTS_BY_COLLECTION.get(name)
            if facts is None:
                self._write_json(HTTPStatus.NOT_FOUND, {"detail": f"unknown collection {name}"})
                return
            self._write_json(HTTPStatus.OK, facts)
            return

        self._write_json(HTTPStatus.NOT_FOUND, {"detail": "not found"})

    def log_message(self, _: str, *args: object) -> None:
        if args:
            print("mock-upstream:", *args)

    def _write_json(self, status: HTTPStatus, payload: object) -> None:
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Serve sample collections, facts and points of interest for local reconciliation runs."
    )
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8081)
    args = parser.parse_args()

    server = ThreadingHTTPServer((args.host, args.port), MockUpstreamHandler)
    print(f"mock-upstream listening on http://{args.host}:{args.port}", flush=True)
    print(
        f"set BQ_FACT_SOURCE_URL and BQ_POI_SOURCE_URL to http://{args.host}:{args.port}",
        flush=True,
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
